"""Resend e-mail sender (HTTP API via httpx)."""

import logging
import uuid

import httpx
from pydantic import BaseModel

from ballotflow.services.errors import MailDeliveryError

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
XLSX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


class MailAttachment(BaseModel):
    filename: str
    content_base64: str
    content_type: str = XLSX_MIME_TYPE


class ResendMailer:
    """Send HTML mail through Resend. Without an API key, sends are logged and skipped."""

    def __init__(
        self, api_key: str, sender: str, client: httpx.Client | None = None, timeout: float = 30
    ) -> None:
        self._api_key = api_key
        self._sender = sender
        self._client = client
        self._timeout = timeout

    @property
    def dry_run(self) -> bool:
        return not self._api_key

    def send(
        self,
        to: list[str],
        subject: str,
        html: str,
        attachments: list[MailAttachment] | None = None,
    ) -> str:
        """Send one message and return the provider's message id.

        Raises:
            MailDeliveryError: if the request fails or Resend rejects it.
        """
        if not to:
            raise MailDeliveryError("no recipients")
        if self.dry_run:
            message_id = f"dry-run-{uuid.uuid4()}"
            logger.info("RESEND_API_KEY not set; would send %r to %s (%s)", subject, to, message_id)
            return message_id

        body: dict[str, object] = {
            "from": self._sender,
            "to": to,
            "subject": subject,
            "html": html,
        }
        if attachments:
            body["attachments"] = [
                {"filename": a.filename, "content": a.content_base64, "content_type": a.content_type}
                for a in attachments
            ]
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            if self._client is not None:
                response = self._client.post(RESEND_API_URL, json=body, headers=headers)
            else:
                response = httpx.post(RESEND_API_URL, json=body, headers=headers, timeout=self._timeout)
            response.raise_for_status()
            message_id = str(response.json().get("id") or "")
        except httpx.HTTPError as exc:
            raise MailDeliveryError(f"Resend send failed: {exc}") from exc
        except ValueError as exc:
            raise MailDeliveryError(f"Resend returned an unreadable response: {exc}") from exc

        logger.info("sent %r to %d recipient(s) (id %s)", subject, len(to), message_id)
        return message_id
