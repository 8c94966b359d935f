"""Gmail API gateway: the remote mailbox operations the triage core needs."""

from __future__ import annotations

import base64
import binascii
import logging
import socket
import threading
from typing import Any, Callable, Iterable, Protocol

import httplib2
from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import Resource, build
from googleapiclient.errors import HttpError
from googleapiclient.http import HttpRequest
from tenacity import retry, retry_if_exception, stop_after_attempt, stop_after_delay, wait_exponential

from .constants import (
    DEFAULT_TIMEOUT_SECONDS,
    HISTORY_PAGE_SIZE,
    LIST_PAGE_SIZE,
    RETRY_ATTEMPTS,
    RETRY_DELAY_FACTOR,
    RETRYABLE_STATUSES,
    USER_ID,
)
from .errors import GatewayError, HistoryExpired
from .models import Credential, Label, Message, MessageAdded

logger = logging.getLogger(__name__)


def _is_retryable_http_error(exc: BaseException) -> bool:
    return isinstance(exc, HttpError) and exc.resp.status in RETRYABLE_STATUSES


@retry(
    retry=retry_if_exception(_is_retryable_http_error),
    wait=wait_exponential(multiplier=1, min=1, max=30),
    stop=stop_after_attempt(RETRY_ATTEMPTS),
    reraise=True,
)
def _execute_request(request: HttpRequest) -> dict:
    return request.execute()


class CredentialProvider(Protocol):
    """What the gateway needs from the credential manager."""

    def get_valid_credential(self, account: str) -> Credential: ...

    def invalidate(self, account: str) -> None: ...


def decode_body_data(data: str) -> str:
    """Decode a Gmail URL-safe base64 body, tolerating missing padding."""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def _find_part(part: dict, mime_type: str) -> dict | None:
    # Depth-first search through multipart payloads.
    if part.get("mimeType") == mime_type and part.get("body", {}).get("data"):
        return part
    for child in part.get("parts", []) or []:
        found = _find_part(child, mime_type)
        if found is not None:
            return found
    return None


def _attachment_filenames(part: dict) -> list[str]:
    names: list[str] = []
    for child in part.get("parts", []) or []:
        if child.get("filename"):
            names.append(child["filename"])
        names.extend(_attachment_filenames(child))
    return names


def extract_body_text(payload: dict) -> str:
    """Prefer the first text/plain part of a multipart payload, else the single body."""
    if payload.get("parts"):
        part = _find_part(payload, "text/plain")
        if part is not None:
            return decode_body_data(part["body"]["data"])
        return ""
    data = payload.get("body", {}).get("data")
    return decode_body_data(data) if data else ""


def parse_message(resource: dict) -> Message:
    """Build a :class:`Message` from a ``users.messages.get(format=full)`` resource."""
    payload = resource.get("payload", {}) or {}
    headers = [(h.get("name", ""), h.get("value", "")) for h in payload.get("headers", []) or []]
    return Message(
        id=resource["id"],
        thread_id=resource.get("threadId", ""),
        headers=headers,
        body_text=extract_body_text(payload),
        attachment_filenames=_attachment_filenames(payload),
        label_ids=set(resource.get("labelIds", []) or []),
    )


def find_label(labels: dict[str, Label], name: str) -> Label | None:
    # Gmail treats label names case-insensitively
    wanted = name.lower()
    for label_name, label in labels.items():
        if label_name.lower() == wanted:
            return label
    return None


class MailboxGateway:
    """Remote operations on one Gmail account.

    googleapiclient resources are not thread-safe, so each thread gets its
    own, rebuilt whenever the credential manager hands out a new access token.
    Each HTTP attempt is bounded by ``timeout`` seconds; retries of one call
    stop once ``timeout * RETRY_DELAY_FACTOR`` seconds have passed.
    """

    def __init__(
        self,
        account: str,
        credentials: CredentialProvider,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        service_factory: Callable[[Credential], Resource] | None = None,
    ) -> None:
        self.account = account
        self.timeout = timeout
        self._credentials = credentials
        self._service_factory = service_factory or self._build_service
        self._local = threading.local()
        self._stop = stop_after_attempt(RETRY_ATTEMPTS) | stop_after_delay(timeout * RETRY_DELAY_FACTOR)

    def _build_service(self, credential: Credential) -> Resource:
        # Refresh is owned by the credential manager, so only the bearer token is passed on.
        creds = Credentials(token=credential.access_token)
        http = AuthorizedHttp(creds, http=httplib2.Http(timeout=self.timeout))
        return build("gmail", "v1", http=http, cache_discovery=False)

    def _service(self) -> Resource:
        credential = self._credentials.get_valid_credential(self.account)
        if getattr(self._local, "token", None) != credential.access_token:
            self._local.service = self._service_factory(credential)
            self._local.token = credential.access_token
        return self._local.service

    def _execute(self, make_request: Callable[[Resource], HttpRequest], what: str) -> dict:
        service = self._service()
        try:
            return _execute_request.retry_with(stop=self._stop)(make_request(service)) or {}
        except HttpError as exc:
            status = exc.resp.status
            if status == 401:
                self._credentials.invalidate(self.account)
            raise GatewayError(f"{what} failed with HTTP {status}: {exc}", status=status) from exc
        except RefreshError as exc:
            # The bearer token was rejected mid-flight; reload on the next call.
            self._credentials.invalidate(self.account)
            raise GatewayError(f"{what} failed: access token rejected", status=401) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise GatewayError(f"{what} timed out after {self.timeout}s") from exc
        except (httplib2.HttpLib2Error, OSError) as exc:
            raise GatewayError(f"{what} failed: {exc}") from exc

    # --- profile and labels ---

    def get_profile(self) -> dict:
        return self._execute(lambda s: s.users().getProfile(userId=USER_ID), "getProfile")

    def list_labels(self) -> dict[str, Label]:
        resp = self._execute(lambda s: s.users().labels().list(userId=USER_ID), "labels.list")
        return {item["name"]: Label(id=item["id"], name=item["name"]) for item in resp.get("labels", [])}

    def ensure_label(self, name: str) -> Label:
        """Return the label called name, creating it when missing.

        A concurrent creation (HTTP 409) is treated as success.
        """
        existing = find_label(self.list_labels(), name)
        if existing is not None:
            return existing

        body = {
            "name": name,
            "labelListVisibility": "labelShow",
            "messageListVisibility": "show",
        }
        try:
            created = self._execute(
                lambda s: s.users().labels().create(userId=USER_ID, body=body),
                f"labels.create({name})",
            )
        except GatewayError as exc:
            if exc.status != 409:
                raise
            logger.info("Label %s already exists, re-reading labels", name)
            existing = find_label(self.list_labels(), name)
            if existing is None:
                raise
            return existing

        logger.info("Created label %s", name)
        return Label(id=created["id"], name=created["name"])

    # --- messages ---

    def get_message(self, message_id: str) -> Message:
        resource = self._execute(
            lambda s: s.users().messages().get(userId=USER_ID, id=message_id, format="full"),
            f"messages.get({message_id})",
        )
        try:
            return parse_message(resource)
        except (KeyError, binascii.Error, ValueError) as exc:
            raise GatewayError(f"messages.get({message_id}) returned an unparseable message: {exc!r}") from exc

    def modify_labels(self, message_id: str, add: Iterable[str] = (), remove: Iterable[str] = ()) -> None:
        body: dict[str, Any] = {"addLabelIds": list(add), "removeLabelIds": list(remove)}
        self._execute(
            lambda s: s.users().messages().modify(userId=USER_ID, id=message_id, body=body),
            f"messages.modify({message_id})",
        )

    def list_message_ids(self, label_ids: list[str] | None = None, max_results: int | None = None) -> list[str]:
        """List message IDs carrying all of label_ids, handling pagination."""
        ids: list[str] = []
        page_token: str | None = None

        while True:
            kwargs: dict = {"userId": USER_ID, "maxResults": LIST_PAGE_SIZE}
            if label_ids:
                kwargs["labelIds"] = label_ids
            if page_token:
                kwargs["pageToken"] = page_token

            resp = self._execute(lambda s: s.users().messages().list(**kwargs), "messages.list")
            for msg in resp.get("messages", []):
                ids.append(msg["id"])
                if max_results and len(ids) >= max_results:
                    return ids[:max_results]

            page_token = resp.get("nextPageToken")
            if not page_token:
                break

        return ids

    def send_message(self, raw: bytes, thread_id: str = "") -> dict:
        body: dict[str, Any] = {"raw": base64.urlsafe_b64encode(raw).decode("ascii")}
        if thread_id:
            body["threadId"] = thread_id
        return self._execute(lambda s: s.users().messages().send(userId=USER_ID, body=body), "messages.send")

    # --- history ---

    def list_history(self, start_history_id: int) -> list[MessageAdded]:
        """Return every messageAdded entry after start_history_id, in provider order."""
        added: list[MessageAdded] = []
        page_token: str | None = None

        while True:
            kwargs: dict = {
                "userId": USER_ID,
                "startHistoryId": str(start_history_id),
                "historyTypes": ["messageAdded"],
                "maxResults": HISTORY_PAGE_SIZE,
            }
            if page_token:
                kwargs["pageToken"] = page_token

            try:
                resp = self._execute(lambda s: s.users().history().list(**kwargs), "history.list")
            except GatewayError as exc:
                if exc.status == 404:
                    raise HistoryExpired(
                        f"History from {start_history_id} is no longer available", status=404
                    ) from exc
                raise

            records = resp.get("history", [])
            logger.debug("history.list returned %d records", len(records))
            for record in records:
                record_id = int(record.get("id", 0) or 0)
                for entry in record.get("messagesAdded", []) or []:
                    message_id = (entry.get("message") or {}).get("id")
                    if message_id:
                        added.append(MessageAdded(message_id=message_id, history_id=record_id))

            page_token = resp.get("nextPageToken")
            if not page_token:
                break

        return added

    # --- push subscription ---

    def watch(self, topic_name: str, label_ids: list[str]) -> dict:
        body = {"topicName": topic_name, "labelIds": label_ids}
        return self._execute(lambda s: s.users().watch(userId=USER_ID, body=body), "watch")

    def stop(self) -> None:
        self._execute(lambda s: s.users().stop(userId=USER_ID), "stop")
