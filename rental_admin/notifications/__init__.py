"""
Account holder notifications.

- Merge notification email with per-recipient delivery outcome
"""

from rental_admin.notifications.email_sender import EmailSender

__all__ = ["EmailSender"]
