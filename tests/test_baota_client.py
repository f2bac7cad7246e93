"""Unit tests for BaotaClient."""

import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from kube_bt_sync.cli import (
    PROXY_NAME,
    BaotaClient,
    PanelSite,
    TransportError,
    sign_request,
)


def make_client() -> BaotaClient:
    return BaotaClient(url="https://panel.lan:8888/", api_key="secret", clock=lambda: 1700000000)


def make_response(body: str) -> MagicMock:
    response = MagicMock()
    response.content = body.encode("utf-8")
    return response


class TestBaotaCall:
    """Tests for the signed POST transport."""

    def test_call_posts_signed_form(self) -> None:
        """Request carries the signature, user params and transport settings."""
        client = make_client()

        with patch.object(client._session, "post") as mock_post:
            mock_post.return_value = make_response('{"status": true}')

            body = client.call("/site?action=AddSite", {"webname": "x"})

            assert body == '{"status": true}'
            mock_post.assert_called_once()
            args, kwargs = mock_post.call_args
            assert args[0] == "https://panel.lan:8888/site?action=AddSite"
            assert kwargs["data"] == {"webname": "x", **sign_request("secret", 1700000000)}
            assert kwargs["headers"]["Content-Type"] == "application/x-www-form-urlencoded"
            assert kwargs["timeout"] == 15.0
            assert kwargs["verify"] is False

    def test_user_params_never_overwrite_signature(self) -> None:
        client = make_client()

        with patch.object(client._session, "post") as mock_post:
            mock_post.return_value = make_response("ok")

            client.call("/x", {"request_time": "1", "request_token": "forged"})

            data = mock_post.call_args.kwargs["data"]
            assert data["request_time"] == "1700000000"
            assert data["request_token"] == "a9928977fac385df0305b03f9d039e65"

    def test_call_path_without_leading_slash(self) -> None:
        client = make_client()

        with patch.object(client._session, "post") as mock_post:
            mock_post.return_value = make_response("ok")

            client.call("system?action=GetSystemTotal")

            assert mock_post.call_args.args[0] == "https://panel.lan:8888/system?action=GetSystemTotal"

    def test_call_wraps_transport_failure(self) -> None:
        client = make_client()

        with patch.object(client._session, "post") as mock_post:
            mock_post.side_effect = requests.exceptions.ConnectTimeout("timed out")

            with pytest.raises(TransportError):
                client.call("/x")

    def test_call_rejects_undecodable_body(self) -> None:
        client = make_client()

        with patch.object(client._session, "post") as mock_post:
            response = MagicMock()
            response.content = b"\xff\xfe\xfa"
            mock_post.return_value = response

            with pytest.raises(TransportError):
                client.call("/x")

    def test_session_does_not_verify_tls(self) -> None:
        assert make_client()._session.verify is False


class TestBaotaSites:
    """Tests for site listing and management."""

    def test_list_sites_parses_names(self) -> None:
        client = make_client()
        payload = {
            "data": [
                {"id": 3, "name": "a.example.com", "ssl": 1},
                {"id": 4, "name": "b.example.com", "ssl": -1},
                {"id": 5},
                "garbage",
            ]
        }

        with patch.object(client._session, "post") as mock_post:
            mock_post.return_value = make_response(json.dumps(payload))

            sites = client.list_sites()

            assert sites == [
                PanelSite(name="a.example.com", id=3, ssl=True),
                PanelSite(name="b.example.com", id=4, ssl=False),
            ]
            args, kwargs = mock_post.call_args
            assert args[0] == "https://panel.lan:8888/data?action=getData"
            assert kwargs["data"]["table"] == "sites"
            assert kwargs["data"]["limit"] == "1000"
            assert "search" not in kwargs["data"]

    def test_list_sites_without_data_list_fails(self) -> None:
        client = make_client()

        with patch.object(client._session, "post") as mock_post:
            mock_post.return_value = make_response('{"status": false, "msg": "API校验失败"}')

            with pytest.raises(TransportError):
                client.list_sites()

    def test_list_sites_with_html_body_fails(self) -> None:
        client = make_client()

        with patch.object(client._session, "post") as mock_post:
            mock_post.return_value = make_response("<html>502</html>")

            with pytest.raises(TransportError):
                client.list_sites()

    def test_find_site_id_matches_exact_name(self) -> None:
        client = make_client()
        payload = {
            "data": [
                {"id": 7, "name": "www.a.example.com"},
                {"id": 8, "name": "a.example.com"},
            ]
        }

        with patch.object(client._session, "post") as mock_post:
            mock_post.return_value = make_response(json.dumps(payload))

            assert client.find_site_id("a.example.com") == 8
            data = mock_post.call_args.kwargs["data"]
            assert data["search"] == "a.example.com"
            assert "limit" not in data

    def test_find_site_id_missing(self) -> None:
        client = make_client()

        with patch.object(client._session, "post") as mock_post:
            mock_post.return_value = make_response('{"data": []}')

            assert client.find_site_id("a.example.com") is None

    def test_add_site_params(self) -> None:
        client = make_client()

        with patch.object(client._session, "post") as mock_post:
            mock_post.return_value = make_response("ok")

            client.add_site("a.example.com")

            data = mock_post.call_args.kwargs["data"]
            assert mock_post.call_args.args[0].endswith("/site?action=AddSite")
            assert data["webname"] == '{"domain":"a.example.com","domainlist":[],"count":0}'
            assert data["path"] == "/www/wwwroot/a.example.com"
            assert data["type_id"] == "0"
            assert data["type"] == "PHP"
            assert data["version"] == "00"
            assert data["port"] == "80"
            assert data["ps"] == "[kube-bt-sync]"

    def test_delete_site_params(self) -> None:
        client = make_client()

        with patch.object(client._session, "post") as mock_post:
            mock_post.return_value = make_response("ok")

            client.delete_site(8, "a.example.com")

            data = mock_post.call_args.kwargs["data"]
            assert mock_post.call_args.args[0].endswith("/site?action=DeleteSite")
            assert data["id"] == "8"
            assert data["webname"] == "a.example.com"


class TestBaotaProxies:
    """Tests for reverse proxy calls."""

    def test_create_proxy_params(self) -> None:
        client = make_client()

        with patch.object(client._session, "post") as mock_post:
            mock_post.return_value = make_response("ok")

            client.create_proxy("a.example.com", "http://home.example.com:38333")

            data = mock_post.call_args.kwargs["data"]
            assert mock_post.call_args.args[0].endswith("/site?action=CreateProxy")
            assert data["sitename"] == "a.example.com"
            assert data["proxyname"] == PROXY_NAME
            assert data["proxydir"] == "/"
            assert data["proxysite"] == "http://home.example.com:38333"
            assert data["todomain"] == "$host"
            assert data["advanced"] == "0"
            assert data["cache"] == "0"
            assert data["cachetime"] == "1"
            assert data["type"] == "1"
            assert json.loads(data["subfilter"]) == [{"sub1": "", "sub2": ""}] * 3

    def test_modify_proxy_uses_same_params(self) -> None:
        client = make_client()

        with patch.object(client._session, "post") as mock_post:
            mock_post.return_value = make_response("ok")

            client.modify_proxy("a.example.com", "http://home.example.com:41000")

            assert mock_post.call_args.args[0].endswith("/site?action=ModifyProxy")
            assert mock_post.call_args.kwargs["data"]["proxysite"] == "http://home.example.com:41000"

    def test_get_proxy_list(self) -> None:
        client = make_client()
        payload = [{"proxyname": PROXY_NAME, "proxysite": "http://old:1"}, "junk"]

        with patch.object(client._session, "post") as mock_post:
            mock_post.return_value = make_response(json.dumps(payload))

            proxies = client.get_proxy_list("a.example.com")

            assert proxies == [{"proxyname": PROXY_NAME, "proxysite": "http://old:1"}]
            assert mock_post.call_args.kwargs["data"]["sitename"] == "a.example.com"

    def test_get_proxy_list_rejects_non_list(self) -> None:
        client = make_client()

        with patch.object(client._session, "post") as mock_post:
            mock_post.return_value = make_response('{"status": false}')

            with pytest.raises(TransportError):
                client.get_proxy_list("a.example.com")
