import logging
import smtplib
from email.message import EmailMessage
from html import escape
from secure_mcq.core.config import settings

logger = logging.getLogger(__name__)


def _configured() -> bool:
    return bool(settings.SMTP_HOST and settings.SMTP_PORT and settings.SMTP_FROM)


def build_message(to: str, student_name: str, test_name: str, results_url: str) -> EmailMessage:
    name = student_name or "Student"
    title = test_name or "Assessment"
    msg = EmailMessage()
    msg["Subject"] = f"Results released: {title}"
    msg["From"] = settings.SMTP_FROM
    msg["To"] = to
    msg.set_content("\n".join([
        f"Hello {name},",
        "",
        f'Your results for "{title}" are now available.',
        "Open this link to view your results:",
        results_url,
        "",
        "If you did not request this, please contact your invigilator.",
    ]))
    msg.add_alternative(
        f"<p>Hello {escape(name)},</p>"
        f"<p>Your results for \"<strong>{escape(title)}</strong>\" are now available.</p>"
        f"<p><a href=\"{escape(results_url, quote=True)}\">View your results</a></p>"
        "<p>If you did not request this, please contact your invigilator.</p>",
        subtype="html",
    )
    return msg


def send_results_released_email(to: str, student_name: str, test_name: str, results_url: str) -> dict:
    if not settings.EMAIL_ENABLED:
        return {"sent": False, "reason": "disabled"}
    if not _configured():
        return {"sent": False, "reason": "smtp_not_configured"}
    msg = build_message(to, student_name, test_name, results_url)
    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=30) as server:
        if settings.SMTP_TLS:
            server.starttls()
        if settings.SMTP_USER and settings.SMTP_PASSWORD:
            server.login(settings.SMTP_USER, settings.SMTP_PASSWORD.get_secret_value())
        server.send_message(msg)
    logger.info("results-released e-mail sent to %s", to)
    return {"sent": True}
