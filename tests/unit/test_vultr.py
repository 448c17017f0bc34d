#!/usr/bin/env python3
"""
Unit tests for the Vultr API client
"""

import pytest
import sys
from pathlib import Path
from unittest.mock import patch, MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from gameserver.errors import ProviderError
from gameserver.vultr import VultrClient, Instance, Snapshot, BASE_URL, is_ready, newest_first


def _resp(status_code=200, body=None, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = body if body is not None else {}
    resp.text = text
    return resp


def _snap(id, description, date_created, status="complete"):
    return {
        "id": id, "description": description, "date_created": date_created,
        "size": 1024, "status": status,
    }


class TestVultrClientInit:

    def test_init_with_explicit_key(self):
        client = VultrClient(api_key="key-123")
        assert client.api_key == "key-123"
        assert client.timeout == VultrClient.DEFAULT_TIMEOUT
        assert client.base_url == BASE_URL

    def test_init_from_env(self):
        with patch.dict("os.environ", {"VULTR_API_KEY": "env-key"}):
            client = VultrClient()
            assert client.api_key == "env-key"

    def test_headers_include_bearer_token(self):
        client = VultrClient(api_key="my-key")
        headers = client._headers()
        assert headers["Authorization"] == "Bearer my-key"
        assert headers["Content-Type"] == "application/json"

    def test_headers_no_auth_without_key(self):
        client = VultrClient(api_key="k")
        client.api_key = None
        assert "Authorization" not in client._headers()


class TestRequest:

    @pytest.fixture
    def client(self):
        return VultrClient(api_key="k")

    @patch("gameserver.vultr.requests.request")
    def test_no_content_is_empty_success(self, mock_req, client):
        mock_req.return_value = _resp(204)

        assert client.delete_instance("abc") is None
        mock_req.return_value.json.assert_not_called()
        args, kwargs = mock_req.call_args
        assert args == ("DELETE", f"{BASE_URL}/instances/abc")
        assert kwargs["headers"]["Authorization"] == "Bearer k"

    @patch("gameserver.vultr.requests.request")
    def test_error_status_raises_provider_error(self, mock_req, client):
        mock_req.return_value = _resp(404, text='{"error":"not found"}')

        with pytest.raises(ProviderError) as exc_info:
            client.get_instance("missing")

        assert exc_info.value.status_code == 404
        assert exc_info.value.body == '{"error":"not found"}'
        assert exc_info.value.transient is False
        assert client.get_stats()["total_errors"] == 1

    @patch("gameserver.vultr.requests.request")
    def test_server_error_is_transient(self, mock_req, client):
        mock_req.return_value = _resp(503, text="unavailable")
        with pytest.raises(ProviderError) as exc_info:
            client.list_snapshots()
        assert exc_info.value.transient is True

    @patch("gameserver.vultr.requests.request")
    def test_connection_error_raises_provider_error(self, mock_req, client):
        import requests as req
        mock_req.side_effect = req.ConnectionError("refused")

        with pytest.raises(ProviderError) as exc_info:
            client.list_instances()

        assert exc_info.value.status_code is None
        assert exc_info.value.transient is True

    @patch("gameserver.vultr.requests.request")
    def test_timeout_raises_provider_error(self, mock_req, client):
        import requests as req
        mock_req.side_effect = req.Timeout()
        with pytest.raises(ProviderError):
            client.get_snapshot("s1")

    @patch("gameserver.vultr.requests.request")
    def test_no_retry_on_failure(self, mock_req, client):
        mock_req.return_value = _resp(500, text="boom")
        with pytest.raises(ProviderError):
            client.create_snapshot("i1", "alpha-x")
        assert mock_req.call_count == 1


class TestInstances:

    @pytest.fixture
    def client(self):
        return VultrClient(api_key="k")

    @patch("gameserver.vultr.requests.request")
    def test_list_instances(self, mock_req, client):
        mock_req.return_value = _resp(body={
            "instances": [
                {"id": "i-1", "label": "alpha-server", "main_ip": "203.0.113.10",
                 "status": "active", "power_status": "running", "server_status": "ok",
                 "region": "nrt", "plan": "vc2-2c-4gb"},
                {"id": "i-2", "label": "beta-server", "main_ip": "0.0.0.0",
                 "status": "pending", "power_status": "stopped", "server_status": "none"},
            ],
            "meta": {"total": 2, "links": {"next": "", "prev": ""}},
        })

        instances = client.list_instances()

        assert [i.id for i in instances] == ["i-1", "i-2"]
        assert instances[0].main_ip == "203.0.113.10"
        assert instances[0].ready is True
        assert instances[1].ready is False

    @patch("gameserver.vultr.requests.request")
    def test_list_follows_cursor(self, mock_req, client):
        mock_req.side_effect = [
            _resp(body={"instances": [{"id": "i-1", "label": "a"}],
                        "meta": {"links": {"next": "cursor-2"}}}),
            _resp(body={"instances": [{"id": "i-2", "label": "b"}],
                        "meta": {"links": {"next": ""}}}),
        ]

        instances = client.list_instances()

        assert [i.id for i in instances] == ["i-1", "i-2"]
        assert mock_req.call_args_list[1][1]["params"]["cursor"] == "cursor-2"

    @patch("gameserver.vultr.requests.request")
    def test_find_instance_by_label(self, mock_req, client):
        mock_req.return_value = _resp(body={"instances": [
            {"id": "i-1", "label": "beta-server"},
            {"id": "i-2", "label": "alpha-server"},
            {"id": "i-3", "label": "alpha-server"},
        ]})

        found = client.find_instance_by_label("alpha-server")

        assert found.id == "i-2"
        assert client.find_instance_by_label("gamma-server") is None

    @patch("gameserver.vultr.requests.request")
    def test_create_instance_from_snapshot(self, mock_req, client):
        mock_req.return_value = _resp(202, body={"instance": {
            "id": "i-new", "label": "alpha-server", "status": "pending",
        }})

        instance = client.create_instance_from_snapshot("snap-1", "nrt", "vc2-2c-4gb", "alpha-server")

        assert instance.id == "i-new"
        args, kwargs = mock_req.call_args
        assert args == ("POST", f"{BASE_URL}/instances")
        assert kwargs["json"] == {
            "region": "nrt", "plan": "vc2-2c-4gb",
            "snapshot_id": "snap-1", "label": "alpha-server",
        }

    @patch("gameserver.vultr.requests.request")
    def test_get_instance(self, mock_req, client):
        mock_req.return_value = _resp(body={"instance": {
            "id": "i-1", "label": "alpha-server", "status": "active",
            "power_status": "running", "server_status": "installingbooting",
        }})
        instance = client.get_instance("i-1")
        assert instance.status == "active"
        assert is_ready(instance) is False


class TestSnapshots:

    @pytest.fixture
    def client(self):
        return VultrClient(api_key="k")

    @patch("gameserver.vultr.requests.request")
    def test_find_snapshots_by_prefix_filters_and_sorts(self, mock_req, client):
        mock_req.return_value = _resp(body={"snapshots": [
            _snap("s1", "alpha-20240101-0000", "2024-01-01T00:00:00+00:00"),
            _snap("s3", "alpha-20240103-0000", "2024-01-03T00:00:00+00:00"),
            _snap("b1", "beta-20240104-0000", "2024-01-04T00:00:00+00:00"),
            _snap("s2", "alpha-20240102-0000", "2024-01-02T00:00:00+00:00"),
            _snap("x1", "my alpha-copy", "2024-01-05T00:00:00+00:00"),
        ]})

        found = client.find_snapshots_by_prefix("alpha-")

        assert [s.id for s in found] == ["s3", "s2", "s1"]
        assert all(s.description.startswith("alpha-") for s in found)

    def test_newest_first_breaks_ties_by_id(self):
        same = "2024-01-01T00:00:00+00:00"
        ordered = newest_first([
            Snapshot(id="a", description="p-1", date_created=same),
            Snapshot(id="c", description="p-2", date_created=same),
            Snapshot(id="b", description="p-3", date_created="2023-12-31T00:00:00+00:00"),
        ])
        assert [s.id for s in ordered] == ["c", "a", "b"]

    def test_unparseable_date_sorts_oldest(self):
        ordered = newest_first([
            Snapshot(id="bad", description="p", date_created="not a date"),
            Snapshot(id="ok", description="p", date_created="2024-01-01T00:00:00Z"),
        ])
        assert [s.id for s in ordered] == ["ok", "bad"]

    @patch("gameserver.vultr.requests.request")
    def test_create_snapshot(self, mock_req, client):
        mock_req.return_value = _resp(201, body={"snapshot": _snap(
            "s-new", "alpha-20240104-000000", "2024-01-04T00:00:00+00:00", status="pending",
        )})

        snapshot = client.create_snapshot("i-1", "alpha-20240104-000000")

        assert snapshot.id == "s-new"
        assert snapshot.is_complete is False
        assert mock_req.call_args[1]["json"] == {
            "instance_id": "i-1", "description": "alpha-20240104-000000",
        }

    @patch("gameserver.vultr.requests.request")
    def test_delete_snapshot(self, mock_req, client):
        mock_req.return_value = _resp(204)
        client.delete_snapshot("s1")
        assert mock_req.call_args[0] == ("DELETE", f"{BASE_URL}/snapshots/s1")


class TestStats:

    @patch("gameserver.vultr.requests.request")
    def test_stats_count_requests(self, mock_req):
        client = VultrClient(api_key="k")
        mock_req.return_value = _resp(body={"snapshot": _snap("s1", "a", "")})
        client.get_snapshot("s1")
        client.get_snapshot("s1")

        stats = client.get_stats()
        assert stats["total_requests"] == 2
        assert stats["total_errors"] == 0
        assert stats["error_rate_percent"] == 0

    def test_instance_to_dict_omits_raw(self):
        inst = Instance(id="i", label="l", raw={"x": 1})
        assert "raw" not in inst.to_dict()
