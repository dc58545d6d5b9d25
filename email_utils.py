"""
Outbound email over SMTP, configured from the environment:
EMAIL_HOST, EMAIL_PORT, EMAIL_USERNAME, EMAIL_PASSWORD, EMAIL_FROM, EMAIL_USE_TLS.
"""

import os
import logging
import smtplib
from email.message import EmailMessage

logger = logging.getLogger(__name__)


def send_email(email: str, subject: str, message: str) -> None:
    msg = EmailMessage()
    msg["From"] = os.getenv("EMAIL_FROM", "Natours <no-reply@natours.io>")
    msg["To"] = email
    msg["Subject"] = subject
    msg.set_content(message)

    host = os.getenv("EMAIL_HOST", "localhost")
    port = int(os.getenv("EMAIL_PORT", "25"))
    username = os.getenv("EMAIL_USERNAME")
    password = os.getenv("EMAIL_PASSWORD")

    with smtplib.SMTP(host, port, timeout=30) as smtp:
        if os.getenv("EMAIL_USE_TLS", "false").lower() == "true":
            smtp.starttls()
        if username and password:
            smtp.login(username, password)
        smtp.send_message(msg)
    logger.info("Sent %r to %s", subject, email)
