from __future__ import annotations

import smtplib
import ssl
from email.message import EmailMessage
from typing import Iterable, Mapping

from flask import current_app, render_template

from .models import Invoice


class MailDeliveryError(RuntimeError):
    pass


def _build_message(*, subject: str, recipient: str, html: str, text: str | None = None) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = current_app.config.get("MAIL_SENDER", "service@fenstri.de")
    msg["To"] = recipient
    msg.set_content(text or "Diese E-Mail benötigt einen HTML-fähigen Client.")
    msg.add_alternative(html, subtype="html")
    return msg


def _smtp_config() -> dict:
    return {
        "host": current_app.config.get("MAIL_SMTP_HOST"),
        "port": current_app.config.get("MAIL_SMTP_PORT", 587),
        "username": current_app.config.get("MAIL_SMTP_USERNAME"),
        "password": current_app.config.get("MAIL_SMTP_PASSWORD"),
        "use_tls": current_app.config.get("MAIL_USE_TLS", True),
        "use_ssl": current_app.config.get("MAIL_USE_SSL", False),
        "timeout": current_app.config.get("MAIL_TIMEOUT", 20),
    }


def send_email(subject: str, recipient: str, *, html: str, text: str | None = None) -> None:
    if not current_app.config.get("MAIL_ENABLED", True):
        current_app.logger.debug("Mail disabled; skipping '%s' to %s", subject, recipient)
        return

    cfg = _smtp_config()
    if not cfg["host"]:
        if current_app.config.get("MAIL_CONSOLE_FALLBACK"):
            current_app.logger.warning("SMTP host not configured; delivering email to console for %s", recipient)
            current_app.logger.info("DEV EMAIL to=%s subject=%s\n%s", recipient, subject, text or html)
            return
        raise MailDeliveryError("SMTP host not configured; set MAIL_SMTP_HOST to send emails.")

    msg = _build_message(subject=subject, recipient=recipient, html=html, text=text)

    try:
        if cfg["use_ssl"]:
            context = ssl.create_default_context()
            with smtplib.SMTP_SSL(cfg["host"], cfg["port"], timeout=cfg["timeout"], context=context) as server:
                if cfg["username"]:
                    server.login(cfg["username"], cfg["password"] or "")
                server.send_message(msg)
        else:
            with smtplib.SMTP(cfg["host"], cfg["port"], timeout=cfg["timeout"]) as server:
                server.ehlo()
                if cfg["use_tls"]:
                    server.starttls(context=ssl.create_default_context())
                if cfg["username"]:
                    server.login(cfg["username"], cfg["password"] or "")
                server.send_message(msg)
    except Exception as exc:  # pragma: no cover - delivery safety
        current_app.logger.exception("Email delivery failed: %s", exc)
        raise MailDeliveryError(str(exc)) from exc


def send_work_order_alert(recipient: str, subject: str, context: Mapping[str, str | Iterable[str]]) -> None:
    html = render_template("emails/work_order_alert.html", **context)
    text = "\n".join([str(context.get("message", ""))] + [str(item) for item in context.get("items", [])])
    send_email(subject, recipient, html=html, text=text)


def send_invoice_paid_notice(recipient: str, invoice: Invoice) -> None:
    html = render_template("emails/invoice_paid.html", invoice=invoice)
    send_email(
        subject=f"Zahlung eingegangen: Rechnung {invoice.invoice_number}",
        recipient=recipient,
        html=html,
        text=f"Die Zahlung für Rechnung {invoice.invoice_number} ({invoice.total_amount} EUR) ist eingegangen.",
    )


__all__ = [
    "send_email",
    "send_work_order_alert",
    "send_invoice_paid_notice",
    "MailDeliveryError",
]
