"""
SMTP notifications for finished audits and optimizations.

Sending is fire-and-forget: a failed send is logged and never reaches the
pipeline that triggered it.
"""
from __future__ import annotations

import logging
import os
import smtplib
from collections.abc import Mapping
from dataclasses import dataclass, field
from email.mime.text import MIMEText

logger = logging.getLogger(__name__)


def _effective_from(email_from: str | None, email_user: str | None, smtp_server: str) -> str:
    if "gmail" in (smtp_server or "").lower() and email_user:
        return email_user
    return email_from or email_user or "noreply@cenniki.local"


@dataclass
class EmailSender:
    enabled: bool = False
    smtp_server: str = "smtp.gmail.com"
    smtp_port: int = 587
    email_user: str = ""
    email_password: str = ""
    email_from: str = ""
    app_base_url: str = "http://localhost:5173"
    sent: list[dict[str, str]] = field(default_factory=list)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EmailSender":
        env = os.environ if environ is None else environ
        try:
            port = int(env.get("SMTP_PORT", "587") or "587")
        except ValueError:
            port = 587
        return cls(
            enabled=env.get("EMAIL_ENABLED", "false").strip().lower() in {"1", "true", "yes", "on"},
            smtp_server=env.get("SMTP_SERVER", "smtp.gmail.com"),
            smtp_port=port,
            email_user=env.get("EMAIL_USER", ""),
            email_password=env.get("EMAIL_PASSWORD", ""),
            email_from=env.get("EMAIL_FROM", ""),
            app_base_url=env.get("APP_BASE_URL", "http://localhost:5173").rstrip("/"),
        )

    def _send(self, to_email: str, subject: str, body: str) -> None:
        if not (self.email_user and self.email_password):
            raise RuntimeError("Email credentials not configured. Set EMAIL_USER and EMAIL_PASSWORD.")
        msg = MIMEText(body)
        msg["Subject"] = subject
        msg["From"] = _effective_from(self.email_from, self.email_user, self.smtp_server)
        msg["To"] = to_email
        with smtplib.SMTP(self.smtp_server, self.smtp_port) as server:
            server.starttls()
            server.login(self.email_user, self.email_password)
            server.sendmail(msg["From"], [to_email], msg.as_string())

    def send(self, *, to_email: str | None, subject: str, body: str) -> bool:
        if not to_email:
            return False
        self.sent.append({"to": to_email, "subject": subject, "body": body})
        if not self.enabled:
            return False
        try:
            self._send(to_email, subject, body)
        except (OSError, smtplib.SMTPException, RuntimeError) as exc:
            logger.warning("email_send_failed to=%s error=%s", to_email, type(exc).__name__)
            return False
        return True

    def optimization_completed(self, *, to_email: str | None, price_list_name: str, price_list_id: str, changes: int) -> bool:
        return self.send(
            to_email=to_email,
            subject="Optymalizacja cennika zakończona",
            body=(
                f"Cennik \"{price_list_name}\" został zoptymalizowany. Liczba zmian: {changes}.\n"
                f"Zobacz wynik: {self.app_base_url}/optimization-results?pricelist={price_list_id}\n"
            ),
        )

    def optimization_failed(self, *, to_email: str | None, price_list_name: str, message: str) -> bool:
        return self.send(
            to_email=to_email,
            subject="Optymalizacja cennika nie powiodła się",
            body=f"Nie udało się zoptymalizować cennika \"{price_list_name}\".\n{message}\n",
        )

    def audit_completed(self, *, to_email: str | None, salon_name: str, audit_id: str, score: int) -> bool:
        return self.send(
            to_email=to_email,
            subject="Audyt cennika gotowy",
            body=(
                f"Audyt salonu {salon_name} jest gotowy. Wynik: {score}/100.\n"
                f"Raport: {self.app_base_url}/audit-results?audit={audit_id}\n"
            ),
        )
