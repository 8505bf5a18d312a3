"""Email notifier via SMTP.

Sends one new-arrivals email per recipient listing every product of the run.
Supports STARTTLS (587) or SSL (465). Keep bodies short & link out.
"""

from __future__ import annotations

import html
import logging
import smtplib
import ssl
from abc import ABC, abstractmethod
from email.message import EmailMessage
from typing import Optional, Sequence

from . import config

logger = logging.getLogger(__name__)


class EmailConfigurationError(RuntimeError):
    """SMTP credentials or sender address are missing."""


class EmailSender(ABC):
    """Delivers the new-arrivals email to a single address."""

    @abstractmethod
    def send(self, to: str, products: Sequence) -> None:
        """`products` items expose name, url and image_url. Raises on failure."""


def build_subject(products: Sequence, prefix: str = "") -> str:
    if len(products) == 1:
        subject = f"New Arrival Alert: {products[0].name}"
    else:
        subject = f"{len(products)} New Arrivals Just Dropped!"
    return f"{prefix} {subject}".strip()


def build_bodies(products: Sequence) -> tuple[str, str]:
    """Return (plain_text, html) bodies."""
    count = len(products)

    # --- Plain text body
    if count == 1:
        p = products[0]
        plain = (
            "New arrival just dropped!\n\n"
            f"{p.name} has just been added to the store.\n\n"
            f"Grab it now: {p.url}\n"
        )
    else:
        plain = (
            f"{count} new arrivals just dropped!\n\n"
            + "\n".join(f"{i}. {p.name}\n   {p.url}\n" for i, p in enumerate(products, start=1))
        )

    # --- HTML body (avoid nested f-strings)
    items = []
    for p in products:
        name = html.escape(p.name or "")
        url = html.escape(p.url or "", quote=True)
        img = (
            '<img src="{}" alt="{}" style="max-width:200px;width:100%;">'.format(
                html.escape(p.image_url, quote=True), name
            )
            if p.image_url
            else ""
        )
        items.append(
            "<div style=\"margin-bottom:24px;\">"
            "{img}"
            "<p><strong>{name}</strong></p>"
            '<p><a href="{url}">View product</a></p>'
            "</div>".format(img=img, name=name, url=url)
        )

    intro = (
        "A brand new product has just been added to the store."
        if count == 1
        else f"{count} brand new products have just been added to the store."
    )
    body_html = (
        "<html>"
        "<body>"
        "<h3>New Arrival{plural}!</h3>"
        "<p>{intro}</p>"
        "{items}"
        "<p style=\"color:#9ca3af;font-size:12px;\">"
        "You received this email because you subscribed to new arrival alerts."
        "</p>"
        "</body>"
        "</html>"
    ).format(plural="s" if count > 1 else "", intro=intro, items="".join(items))

    return plain, body_html


class SmtpEmailSender(EmailSender):
    def __init__(
        self,
        host: str,
        port: int,
        *,
        use_tls: bool = True,
        username: Optional[str] = None,
        password: Optional[str] = None,
        from_addr: Optional[str] = None,
        subject_prefix: str = "",
        timeout: float = 20,
    ) -> None:
        self.host = host
        self.port = int(port)
        self.use_tls = use_tls
        self.username = username
        self.password = password
        self.from_addr = from_addr or username
        self.subject_prefix = subject_prefix
        self.timeout = timeout

    def _check_config(self) -> None:
        if not (self.username and self.password and self.from_addr):
            raise EmailConfigurationError(
                "Email config incomplete; set EMAIL_USERNAME, EMAIL_PASSWORD and EMAIL_FROM"
            )

    def build_message(self, to: str, products: Sequence) -> EmailMessage:
        plain, body_html = build_bodies(products)
        msg = EmailMessage()
        msg["Subject"] = build_subject(products, self.subject_prefix)
        msg["From"] = self.from_addr or ""
        msg["To"] = to
        msg.set_content(plain)
        msg.add_alternative(body_html, subtype="html")
        return msg

    def send(self, to: str, products: Sequence) -> None:
        if not products:
            logger.debug("No products to send to %s, skipping email", to)
            return
        self._check_config()

        msg = self.build_message(to, products)
        if self.use_tls and self.port == 587:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as s:
                s.ehlo()
                s.starttls(context=ssl.create_default_context())
                s.login(self.username, self.password)
                s.send_message(msg)
        else:
            with smtplib.SMTP_SSL(self.host, self.port, context=ssl.create_default_context(), timeout=self.timeout) as s:
                s.login(self.username, self.password)
                s.send_message(msg)
        logger.info("Email sent to %s (subject=%s)", to, msg.get("Subject"))


def create_email_sender_from_env() -> EmailSender:
    return SmtpEmailSender(
        config.EMAIL_SMTP_HOST,
        config.EMAIL_SMTP_PORT,
        use_tls=config.EMAIL_USE_TLS,
        username=config.EMAIL_USERNAME,
        password=config.EMAIL_PASSWORD,
        from_addr=config.EMAIL_FROM,
        subject_prefix=config.EMAIL_SUBJECT_PREFIX,
    )


__all__ = [
    "EmailConfigurationError",
    "EmailSender",
    "SmtpEmailSender",
    "build_subject",
    "build_bodies",
    "create_email_sender_from_env",
]
