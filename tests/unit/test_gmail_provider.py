"""
Unit tests for the Gmail REST client.
"""

from datetime import datetime, timezone

import pytest
import requests
from unittest.mock import Mock, patch

from smartmail.core.errors import AuthorizationError, ProviderError
from smartmail.core.models import Credential
from smartmail.providers.gmail_provider import GmailProvider, parse_header_date

REQUEST_PATCH = "smartmail.providers.gmail_provider.requests.request"
POST_PATCH = "smartmail.providers.gmail_provider.requests.post"


def http_response(status_code=200, payload=None):
    response = Mock()
    response.status_code = status_code
    response.content = b"{}" if payload is not None else b""
    response.json.return_value = payload
    return response


@pytest.fixture
def gmail():
    provider = GmailProvider({"client_id": "cid", "client_secret": "secret", "timeout": 7})
    provider.set_credential(Credential(access_token="tok", refresh_token="ref"))
    return provider


class TestGmailRequests:
    @patch(REQUEST_PATCH)
    def test_list_messages(self, mock_request, gmail):
        mock_request.return_value = http_response(
            payload={"messages": [{"id": "a"}, {"id": "b"}], "nextPageToken": "next"}
        )

        page = gmail.list_messages(None, "tok1", 1000)

        assert page.message_ids == ["a", "b"]
        assert page.next_page_token == "next"
        args, kwargs = mock_request.call_args
        assert args == ("GET", "https://gmail.googleapis.com/gmail/v1/users/me/messages")
        assert kwargs["params"] == {"q": "in:inbox", "maxResults": 500, "pageToken": "tok1"}
        assert kwargs["headers"] == {"Authorization": "Bearer tok"}
        assert kwargs["timeout"] == 7

    @patch(REQUEST_PATCH)
    def test_empty_listing(self, mock_request, gmail):
        mock_request.return_value = http_response(payload={"resultSizeEstimate": 0})

        page = gmail.list_messages("label:foo", None, 10)

        assert page.message_ids == []
        assert page.next_page_token is None

    @patch(REQUEST_PATCH)
    def test_message_metadata(self, mock_request, gmail):
        mock_request.return_value = http_response(payload={
            "id": "a",
            "threadId": "t",
            "snippet": "Hello there",
            "payload": {"headers": [
                {"name": "Subject", "value": "Invoice"},
                {"name": "From", "value": "Billing <bill@example.com>"},
                {"name": "To", "value": "me@example.com"},
                {"name": "Date", "value": "Wed, 01 May 2024 14:00:00 +0200"},
            ]},
        })

        meta = gmail.get_message_metadata("a")

        assert meta.subject == "Invoice"
        assert meta.sender == "Billing <bill@example.com>"
        assert meta.thread_id == "t"
        assert meta.timestamp == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    @patch(REQUEST_PATCH)
    def test_metadata_defaults(self, mock_request, gmail):
        mock_request.return_value = http_response(payload={"id": "a", "payload": {"headers": []}})

        meta = gmail.get_message_metadata("a")

        assert meta.subject == "No Subject"
        assert meta.sender == "Unknown"
        assert meta.timestamp.tzinfo is not None

    @patch(REQUEST_PATCH)
    def test_create_label(self, mock_request, gmail):
        mock_request.return_value = http_response(payload={"id": "Label_7", "name": "Work"})

        label = gmail.create_label("Work")

        assert label.label_id == "Label_7"
        assert mock_request.call_args.kwargs["json"]["name"] == "Work"

    @patch(REQUEST_PATCH)
    def test_modify_labels(self, mock_request, gmail):
        mock_request.return_value = http_response(payload={"id": "a"})

        gmail.modify_message_labels("a", ["Label_7"])

        args, kwargs = mock_request.call_args
        assert args[1].endswith("/messages/a/modify")
        assert kwargs["json"] == {"addLabelIds": ["Label_7"]}

    @patch(REQUEST_PATCH)
    def test_list_labels(self, mock_request, gmail):
        mock_request.return_value = http_response(payload={"labels": [
            {"id": "INBOX", "name": "INBOX", "type": "system"},
            {"id": "Label_1", "name": "Work", "type": "user"},
        ]})

        labels = gmail.list_labels()

        assert [(label.label_id, label.type) for label in labels] == [("INBOX", "system"), ("Label_1", "user")]


class TestGmailErrors:
    @patch(REQUEST_PATCH)
    def test_401_is_authorization_error(self, mock_request, gmail):
        mock_request.return_value = http_response(401, {"error": {"code": 401}})

        with pytest.raises(AuthorizationError):
            gmail.list_labels()

    @patch(REQUEST_PATCH)
    def test_409_is_already_exists(self, mock_request, gmail):
        mock_request.return_value = http_response(409, {"error": {"code": 409}})

        with pytest.raises(ProviderError) as exc_info:
            gmail.create_label("Work")

        assert exc_info.value.already_exists

    @patch(REQUEST_PATCH)
    def test_500_is_provider_error(self, mock_request, gmail):
        mock_request.return_value = http_response(500, {})

        with pytest.raises(ProviderError) as exc_info:
            gmail.list_labels()

        assert exc_info.value.status_code == 500
        assert not exc_info.value.already_exists

    @patch(REQUEST_PATCH)
    def test_timeout_is_provider_error(self, mock_request, gmail):
        mock_request.side_effect = requests.exceptions.Timeout()

        with pytest.raises(ProviderError) as exc_info:
            gmail.list_labels()

        assert exc_info.value.status_code is None

    def test_no_credential(self):
        with pytest.raises(AuthorizationError):
            GmailProvider({"client_secret": "s"}).list_labels()


class TestTokenRefresh:
    @patch(POST_PATCH)
    def test_refresh_keeps_old_refresh_token(self, mock_post, gmail):
        mock_post.return_value = http_response(200, {"access_token": "new", "expires_in": 3600})

        credential = gmail.refresh_credential("ref")

        assert credential.access_token == "new"
        assert credential.refresh_token == "ref"
        assert credential.expiry is not None and not credential.expired
        data = mock_post.call_args.kwargs["data"]
        assert data["grant_type"] == "refresh_token"
        assert data["client_id"] == "cid"

    @patch(POST_PATCH)
    def test_refresh_rotated_token(self, mock_post, gmail):
        mock_post.return_value = http_response(200, {"access_token": "new", "refresh_token": "ref2"})

        assert gmail.refresh_credential("ref").refresh_token == "ref2"

    @patch(POST_PATCH)
    def test_invalid_grant(self, mock_post, gmail):
        mock_post.return_value = http_response(400, {"error": "invalid_grant"})

        with pytest.raises(AuthorizationError, match="invalid_grant"):
            gmail.refresh_credential("ref")

    @patch(POST_PATCH)
    def test_transport_failure(self, mock_post, gmail):
        mock_post.side_effect = requests.exceptions.ConnectionError()

        with pytest.raises(AuthorizationError):
            gmail.refresh_credential("ref")


@pytest.mark.parametrize("value", [None, "", "not a date"])
def test_parse_header_date_fallback(value):
    parsed = parse_header_date(value)

    assert parsed.tzinfo is not None


def test_parse_naive_header_date_is_utc():
    assert parse_header_date("01 May 2024 12:00:00").tzinfo == timezone.utc
