"""Default service entries for a newly provisioned cluster."""

from cluster_provisioner.models.cluster import ClusterRecord, ServiceEntry


def default_services(record: ClusterRecord, remove_atlantis: bool = False) -> list[ServiceEntry]:
    """Return the platform services every provisioned cluster starts with."""
    domain = record.domain_name
    git_base = f"https://{record.git_provider}.com/{record.git_owner}"
    services = [
        ServiceEntry(
            name=record.git_provider,
            url=f"{git_base}/gitops",
            description="The GitOps repository driving the cluster.",
        ),
        ServiceEntry(name="Vault", url=f"https://vault.{domain}", description="Secrets management."),
        ServiceEntry(name="Argo CD", url=f"https://argocd.{domain}", description="GitOps continuous delivery."),
        ServiceEntry(
            name="Argo Workflows",
            url=f"https://argo.{domain}",
            description="Application build and delivery workflows.",
        ),
    ]
    if not remove_atlantis:
        services.append(
            ServiceEntry(
                name="Atlantis",
                url=f"https://atlantis.{domain}",
                description="Terraform pull request automation.",
            )
        )
    services.extend(
        ServiceEntry(
            name=f"Metaphor {env}",
            url=f"https://metaphor-{env}.{domain}",
            description=f"Sample application, {env} environment.",
        )
        for env in ("development", "staging", "production")
    )
    return services
