"""Tests for the HTTP clients: Vault, telemetry, Vultr, and DNS lookups."""

import base64
from unittest.mock import MagicMock

import pytest
import requests

from cluster_provisioner.dns import resolve_txt
from cluster_provisioner.exceptions import ConfigurationError, ProviderAPIError
from cluster_provisioner.models.cluster import ClusterRecord
from cluster_provisioner.providers.vultr import VultrClient, VultrProvider
from cluster_provisioner.telemetry import METRIC_CLUSTER_INSTALL_COMPLETED, TelemetryClient
from cluster_provisioner.vault import VaultClient


def _response(status_code=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload or {}
    response.content = b"{}" if payload is not None else b""
    response.text = text
    return response


class TestVaultClient:
    """Tests for the Vault HTTP client."""

    def test_initialize_sends_shares(self):
        session = MagicMock()
        session.request.return_value = _response(payload={"keys": ["a"], "root_token": "s.x"})

        result = VaultClient("http://127.0.0.1:8200/", session).initialize()

        assert result["root_token"] == "s.x"
        method, url = session.request.call_args.args
        assert (method, url) == ("PUT", "http://127.0.0.1:8200/v1/sys/init")
        assert session.request.call_args.kwargs["json"] == {"secret_shares": 5, "secret_threshold": 3}

    def test_unseal_stops_when_unsealed(self):
        session = MagicMock()
        session.request.side_effect = [
            _response(payload={"sealed": True}),
            _response(payload={"sealed": False}),
        ]

        VaultClient("http://vault", session).unseal(["k1", "k2", "k3"])

        assert session.request.call_count == 2

    def test_unseal_raises_when_still_sealed(self):
        session = MagicMock()
        session.request.return_value = _response(payload={"sealed": True})

        with pytest.raises(ProviderAPIError, match="still sealed"):
            VaultClient("http://vault", session).unseal(["k1"])

    def test_http_error_raises(self):
        session = MagicMock()
        session.request.return_value = _response(status_code=503, text="sealed")

        with pytest.raises(ProviderAPIError, match="HTTP 503"):
            VaultClient("http://vault", session).seal_status()

    def test_connection_error_raises(self):
        session = MagicMock()
        session.request.side_effect = requests.ConnectionError("refused")

        with pytest.raises(ProviderAPIError, match="refused"):
            VaultClient("http://vault", session).seal_status()


class TestTelemetryClient:
    """Tests for the telemetry client."""

    @pytest.fixture
    def record(self, definition):
        return ClusterRecord.from_definition(definition)

    def test_transmit_sends_event(self, record):
        session = MagicMock()
        session.post.return_value = _response()

        sent = TelemetryClient("key", session).transmit(METRIC_CLUSTER_INSTALL_COMPLETED, record)

        assert sent is True
        payload = session.post.call_args.kwargs["json"]
        assert payload["event"] == METRIC_CLUSTER_INSTALL_COMPLETED
        assert payload["properties"]["cluster_name"] == "demo"
        assert session.post.call_args.kwargs["auth"] == ("key", "")

    def test_no_write_key_sends_nothing(self, record):
        session = MagicMock()

        assert TelemetryClient("", session).transmit(METRIC_CLUSTER_INSTALL_COMPLETED, record) is False
        session.post.assert_not_called()

    def test_opted_out_cluster_sends_nothing(self, record):
        session = MagicMock()
        record = record.model_copy(update={"use_telemetry": False})

        assert TelemetryClient("key", session).transmit(METRIC_CLUSTER_INSTALL_COMPLETED, record) is False
        session.post.assert_not_called()

    def test_rejected_event_raises(self, record):
        session = MagicMock()
        session.post.return_value = _response(status_code=400, text="bad")

        with pytest.raises(ProviderAPIError):
            TelemetryClient("key", session).transmit(METRIC_CLUSTER_INSTALL_COMPLETED, record)


class TestVultrProvider:
    """Tests for the Vultr API client and provider hooks."""

    def test_client_requires_api_key(self):
        with pytest.raises(ConfigurationError):
            VultrClient("")

    def test_client_sets_bearer_token(self):
        session = requests.Session()

        VultrClient("secret", session)

        assert session.headers["Authorization"] == "Bearer secret"

    def test_get_kubeconfig_decodes(self):
        session = MagicMock()
        session.headers = {}
        encoded = base64.b64encode(b"apiVersion: v1\n").decode()
        session.request.return_value = _response(payload={"kube_config": encoded})

        assert VultrClient("secret", session).get_kubeconfig("cid-1") == "apiVersion: v1\n"
        assert session.request.call_args.args[1].endswith("/kubernetes/clusters/cid-1/config")

    def test_liveness_record_created_once(self):
        client = MagicMock()
        client.list_dns_records.return_value = []
        provider = VultrProvider(client, "secret")

        fqdn = provider.create_liveness_record("demo.example.com")

        assert fqdn == "kubefirst-liveness.demo.example.com"
        client.create_dns_record.assert_called_once_with(
            "demo.example.com", "kubefirst-liveness", "TXT", "domain record propagated"
        )

    def test_liveness_record_reused(self):
        client = MagicMock()
        client.list_dns_records.return_value = [{"type": "TXT", "name": "kubefirst-liveness"}]

        VultrProvider(client, "secret").create_liveness_record("demo.example.com")

        client.create_dns_record.assert_not_called()

    def test_state_store_reuses_labeled_storage(self, definition, monkeypatch):
        client = MagicMock()
        storage = {
            "id": "os-1",
            "label": "k1-demo",
            "status": "active",
            "s3_hostname": "ewr1.vultrobjects.com",
            "s3_access_key": "AK",
            "s3_secret_key": "SK",
        }
        client.list_object_storages.return_value = [storage]
        client.get_object_storage.return_value = storage
        provider = VultrProvider(client, "secret", poll_interval=0.01)
        buckets = []
        monkeypatch.setattr(provider, "_create_bucket", buckets.append)

        credentials = provider.create_state_store(definition)

        client.create_object_storage.assert_not_called()
        assert credentials.hostname == "ewr1.vultrobjects.com"
        assert credentials.access_key_id == "AK"
        assert buckets == [credentials]

    def test_state_store_created_in_region(self, definition, monkeypatch):
        client = MagicMock()
        client.list_object_storages.return_value = []
        client.list_object_storage_clusters.return_value = [
            {"id": 1, "region": "sjc", "deploy": "yes"},
            {"id": 2, "region": "ewr", "deploy": "yes"},
        ]
        client.create_object_storage.return_value = {"id": "os-2"}
        client.get_object_storage.return_value = {
            "id": "os-2",
            "status": "active",
            "s3_hostname": "ewr1.vultrobjects.com",
            "s3_access_key": "AK",
            "s3_secret_key": "SK",
        }
        provider = VultrProvider(client, "secret", poll_interval=0.01)
        monkeypatch.setattr(provider, "_create_bucket", lambda credentials: None)

        provider.create_state_store(definition)

        client.create_object_storage.assert_called_once_with(2, "k1-demo")

    def test_write_kubeconfig(self, tmp_path):
        client = MagicMock()
        client.get_kubeconfig.return_value = "apiVersion: v1\n"

        path = VultrProvider(client, "secret").write_kubeconfig("cid-1", tmp_path / "demo" / "kubeconfig")

        assert path.read_text() == "apiVersion: v1\n"
        assert oct(path.stat().st_mode & 0o777) == "0o600"


class TestResolveTxt:
    """Tests for DNS-over-HTTPS TXT lookups."""

    def test_returns_txt_values(self):
        session = MagicMock()
        session.get.return_value = _response(
            payload={"Answer": [{"type": 16, "data": '"domain record propagated"'}, {"type": 5, "data": "x"}]}
        )

        assert resolve_txt("kubefirst-liveness.demo.example.com", session) == ["domain record propagated"]

    def test_lookup_failure_returns_empty(self):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("offline")

        assert resolve_txt("kubefirst-liveness.demo.example.com", session) == []

    def test_non_json_reply_returns_empty(self):
        session = MagicMock()
        session.get.return_value = _response(payload={})
        session.get.return_value.json.side_effect = ValueError("Expecting value")

        assert resolve_txt("kubefirst-liveness.demo.example.com", session) == []

    def test_no_answer_returns_empty(self):
        session = MagicMock()
        session.get.return_value = _response(payload={"Status": 3})

        assert resolve_txt("missing.demo.example.com", session) == []
