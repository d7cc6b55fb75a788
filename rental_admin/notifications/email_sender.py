"""
Account notification email service.

Sends merge notifications through a transactional email HTTP API.
Delivery is best-effort: every call returns an outcome dict and never
raises, so a mail outage cannot fail a merge.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from rental_admin.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


class EmailSender:
    """
    Thin client for the email API.

    Outcome shape: {"sent": bool, "provider": str, "reason": str | None,
    "status_code": int | None}
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.transport = transport

    def _outcome(self, sent: bool, reason: Optional[str] = None, status_code: Optional[int] = None) -> Dict[str, Any]:
        return {
            "sent": sent,
            "provider": self.settings.email_provider,
            "reason": reason,
            "status_code": status_code,
        }

    def send(self, to: Optional[str], subject: str, text: str) -> Dict[str, Any]:
        """
        Send one plain-text email.

        Returns:
            Delivery outcome
        """
        if not to:
            return self._outcome(False, reason="no_recipient_address")

        if not self.settings.email_enabled:
            logger.info(f"Email not configured, skipping notification to {to}")
            return self._outcome(False, reason="email_not_configured")

        payload = {
            "from": self.settings.email_from,
            "to": [to],
            "subject": subject,
            "text": text,
        }
        headers = {
            "Authorization": f"Bearer {self.settings.email_api_key}",
            "Content-Type": "application/json",
            "User-Agent": "RentalAdmin-Mailer/1.0",
        }

        try:
            with httpx.Client(
                timeout=self.settings.email_timeout_seconds,
                transport=self.transport,
            ) as client:
                response = client.post(self.settings.email_api_url, json=payload, headers=headers)
        except httpx.TimeoutException:
            logger.warning(f"Email to {to} timed out")
            return self._outcome(False, reason="Request timed out")
        except httpx.HTTPError as e:
            logger.warning(f"Email to {to} failed: {e}")
            return self._outcome(False, reason=str(e))

        if response.status_code >= 400:
            logger.warning(f"Email API rejected message to {to}: HTTP {response.status_code}")
            return self._outcome(
                False,
                reason=f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        return self._outcome(True, status_code=response.status_code)

    def send_merge_notifications(
        self,
        source: Dict[str, Any],
        target: Dict[str, Any],
        rollback_expires_at: str,
    ) -> Dict[str, Dict[str, Any]]:
        """
        Notify both account holders about a merge.

        Args:
            source: {"id", "name", "email"} of the merged-away account
            target: {"id", "name", "email"} of the surviving account
            rollback_expires_at: ISO deadline for undoing the merge

        Returns:
            {"source": outcome, "target": outcome}
        """
        source_text = (
            f"Hello {source.get('name') or 'there'},\n\n"
            f"Your account ({source.get('email')}) was identified as a duplicate and merged into "
            f"the account registered to {target.get('email')}. Your bookings, payments, messages "
            f"and documents are now available there.\n\n"
            f"If this was a mistake, contact support before {rollback_expires_at} (UTC)."
        )
        target_text = (
            f"Hello {target.get('name') or 'there'},\n\n"
            f"A duplicate account ({source.get('email')}) was merged into your account. "
            f"Its bookings, payments, messages and documents now appear under your profile.\n\n"
            f"If this was a mistake, contact support before {rollback_expires_at} (UTC)."
        )
        return {
            "source": self.send(source.get("email"), "Your duplicate account was merged", source_text),
            "target": self.send(target.get("email"), "An account was merged into yours", target_text),
        }
