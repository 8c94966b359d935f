"""Tests for the Gmail gateway, using a mocked discovery resource."""

from __future__ import annotations

import base64
from unittest.mock import MagicMock

import httplib2
import pytest
from googleapiclient.errors import HttpError
from tenacity import wait_none

import gmail_triage.gateway as gateway_module
from gmail_triage.errors import GatewayError, HistoryExpired
from gmail_triage.gateway import MailboxGateway, extract_body_text, parse_message
from gmail_triage.models import Credential, MessageAdded


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def _http_error(status: int) -> HttpError:
    return HttpError(httplib2.Response({"status": status}), b'{"error": {"message": "boom"}}')


@pytest.fixture
def service() -> MagicMock:
    return MagicMock()


@pytest.fixture
def credentials() -> MagicMock:
    manager = MagicMock()
    manager.get_valid_credential.return_value = Credential(access_token="tok")
    return manager


@pytest.fixture
def gw(service, credentials) -> MailboxGateway:
    return MailboxGateway("owner@example.com", credentials, timeout=5, service_factory=lambda cred: service)


def test_parse_multipart_message():
    resource = {
        "id": "m1",
        "threadId": "t1",
        "labelIds": ["INBOX", "UNREAD"],
        "payload": {
            "mimeType": "multipart/mixed",
            "headers": [
                {"name": "From", "value": "Bob <bob@partner.example>"},
                {"name": "subject", "value": "Figures"},
            ],
            "parts": [
                {
                    "mimeType": "multipart/alternative",
                    "parts": [
                        {"mimeType": "text/html", "body": {"data": _b64("<p>html</p>")}},
                        {"mimeType": "text/plain", "body": {"data": _b64("plain body ~~~ ???")}},
                    ],
                },
                {"mimeType": "application/pdf", "filename": "q1.pdf", "body": {"attachmentId": "a1"}},
                {"mimeType": "text/csv", "filename": "q1.csv", "body": {"attachmentId": "a2"}},
            ],
        },
    }

    msg = parse_message(resource)

    assert msg.id == "m1"
    assert msg.thread_id == "t1"
    assert msg.subject == "Figures"
    assert msg.sender == "Bob <bob@partner.example>"
    assert msg.body_text == "plain body ~~~ ???"
    assert msg.attachment_filenames == ["q1.pdf", "q1.csv"]
    assert msg.label_ids == {"INBOX", "UNREAD"}


def test_extract_body_single_part():
    assert extract_body_text({"mimeType": "text/plain", "body": {"data": _b64("hello")}}) == "hello"
    assert extract_body_text({"mimeType": "text/plain", "body": {"size": 0}}) == ""


def test_extract_body_multipart_without_plain_text():
    payload = {"mimeType": "multipart/alternative", "parts": [{"mimeType": "text/html", "body": {"data": _b64("x")}}]}
    assert extract_body_text(payload) == ""


def test_list_history_paginates(gw, service):
    history_list = service.users.return_value.history.return_value.list
    history_list.return_value.execute.side_effect = [
        {
            "history": [
                {"id": "491", "messagesAdded": [{"message": {"id": "a"}}]},
                {"id": "492", "messages": [{"id": "x"}]},
            ],
            "nextPageToken": "p2",
        },
        {"history": [{"id": "495", "messagesAdded": [{"message": {"id": "b"}}, {"message": {"id": "a"}}]}]},
    ]

    entries = gw.list_history(490)

    assert entries == [MessageAdded("a", 491), MessageAdded("b", 495), MessageAdded("a", 495)]
    first_kwargs = history_list.call_args_list[0].kwargs
    assert first_kwargs["startHistoryId"] == "490"
    assert first_kwargs["historyTypes"] == ["messageAdded"]
    assert "pageToken" not in first_kwargs
    assert history_list.call_args_list[1].kwargs["pageToken"] == "p2"


def test_list_history_without_changes(gw, service):
    service.users.return_value.history.return_value.list.return_value.execute.return_value = {"historyId": "500"}
    assert gw.list_history(490) == []


def test_list_history_404_is_expired(gw, service):
    service.users.return_value.history.return_value.list.return_value.execute.side_effect = _http_error(404)
    with pytest.raises(HistoryExpired) as exc_info:
        gw.list_history(1)
    assert exc_info.value.status == 404


def test_http_error_maps_to_gateway_error(gw, service, credentials):
    service.users.return_value.messages.return_value.get.return_value.execute.side_effect = _http_error(403)
    with pytest.raises(GatewayError) as exc_info:
        gw.get_message("m1")
    assert exc_info.value.status == 403
    credentials.invalidate.assert_not_called()


def test_unauthorized_invalidates_credential(gw, service, credentials):
    service.users.return_value.messages.return_value.get.return_value.execute.side_effect = _http_error(401)
    with pytest.raises(GatewayError):
        gw.get_message("m1")
    credentials.invalidate.assert_called_once_with("owner@example.com")


def test_timeout_maps_to_gateway_error(gw, service):
    service.users.return_value.getProfile.return_value.execute.side_effect = TimeoutError("timed out")
    with pytest.raises(GatewayError, match="timed out"):
        gw.get_profile()


def test_rate_limit_is_retried(gw, service, monkeypatch):
    monkeypatch.setattr(gateway_module._execute_request.retry, "wait", wait_none())
    execute = service.users.return_value.getProfile.return_value.execute
    execute.side_effect = [_http_error(429), {"historyId": "42"}]

    assert gw.get_profile() == {"historyId": "42"}
    assert execute.call_count == 2


def test_ensure_label_finds_existing_case_insensitively(gw, service):
    labels = service.users.return_value.labels.return_value
    labels.list.return_value.execute.return_value = {"labels": [{"id": "Label_1", "name": "urgent"}]}

    label = gw.ensure_label("URGENT")

    assert label.id == "Label_1"
    labels.create.assert_not_called()


def test_ensure_label_creates_visible_label(gw, service):
    labels = service.users.return_value.labels.return_value
    labels.list.return_value.execute.return_value = {"labels": []}
    labels.create.return_value.execute.return_value = {"id": "Label_9", "name": "HIGH_RISK"}

    label = gw.ensure_label("HIGH_RISK")

    assert label.id == "Label_9"
    body = labels.create.call_args.kwargs["body"]
    assert body == {"name": "HIGH_RISK", "labelListVisibility": "labelShow", "messageListVisibility": "show"}


def test_ensure_label_conflict_rereads(gw, service):
    labels = service.users.return_value.labels.return_value
    labels.list.return_value.execute.side_effect = [
        {"labels": []},
        {"labels": [{"id": "Label_2", "name": "URGENT"}]},
    ]
    labels.create.return_value.execute.side_effect = _http_error(409)

    assert gw.ensure_label("URGENT").id == "Label_2"


def test_modify_labels(gw, service):
    gw.modify_labels("m1", add=["Label_1"])
    kwargs = service.users.return_value.messages.return_value.modify.call_args.kwargs
    assert kwargs["id"] == "m1"
    assert kwargs["body"] == {"addLabelIds": ["Label_1"], "removeLabelIds": []}


def test_send_message_encodes_raw(gw, service):
    send = service.users.return_value.messages.return_value.send
    send.return_value.execute.return_value = {"id": "s1"}

    gw.send_message(b"Subject: hi\r\n\r\nbody", thread_id="t1")

    body = send.call_args.kwargs["body"]
    assert base64.urlsafe_b64decode(body["raw"]) == b"Subject: hi\r\n\r\nbody"
    assert body["threadId"] == "t1"


def test_list_message_ids_stops_at_max(gw, service):
    list_ = service.users.return_value.messages.return_value.list
    list_.return_value.execute.side_effect = [
        {"messages": [{"id": "a"}, {"id": "b"}], "nextPageToken": "p2"},
        {"messages": [{"id": "c"}, {"id": "d"}]},
    ]
    assert gw.list_message_ids(label_ids=["INBOX"], max_results=3) == ["a", "b", "c"]
    assert list_.call_args_list[0].kwargs["labelIds"] == ["INBOX"]


def test_watch_request(gw, service):
    watch = service.users.return_value.watch
    watch.return_value.execute.return_value = {"historyId": "900", "expiration": "1767225600000"}

    assert gw.watch("projects/p/topics/gmail", ["INBOX"])["historyId"] == "900"
    assert watch.call_args.kwargs["body"] == {"topicName": "projects/p/topics/gmail", "labelIds": ["INBOX"]}


def test_service_rebuilt_when_token_changes(service, credentials):
    built = []

    def factory(cred):
        built.append(cred.access_token)
        return service

    gw = MailboxGateway("owner@example.com", credentials, service_factory=factory)
    gw.get_profile()
    gw.get_profile()
    credentials.get_valid_credential.return_value = Credential(access_token="tok2")
    gw.get_profile()

    assert built == ["tok", "tok2"]


@pytest.mark.parametrize(
    "resource",
    [
        {"id": "x", "payload": {"body": {"data": "A"}}},
        {"threadId": "t1", "payload": {}},
    ],
)
def test_unparseable_message_is_gateway_error(gw, service, resource):
    service.users.return_value.messages.return_value.get.return_value.execute.return_value = resource
    with pytest.raises(GatewayError, match="unparseable"):
        gw.get_message("x")


def test_retries_stop_at_the_call_deadline(service, credentials, monkeypatch):
    monkeypatch.setattr(gateway_module._execute_request.retry, "wait", wait_none())
    gw = MailboxGateway("owner@example.com", credentials, timeout=0, service_factory=lambda cred: service)
    execute = service.users.return_value.getProfile.return_value.execute
    execute.side_effect = _http_error(503)

    with pytest.raises(GatewayError) as exc_info:
        gw.get_profile()
    assert exc_info.value.status == 503
    assert execute.call_count == 1


def test_retries_stop_after_max_attempts(gw, service, monkeypatch):
    monkeypatch.setattr(gateway_module._execute_request.retry, "wait", wait_none())
    execute = service.users.return_value.getProfile.return_value.execute
    execute.side_effect = _http_error(503)

    with pytest.raises(GatewayError):
        gw.get_profile()
    assert execute.call_count == 5
