# notify.py — result email, sent after the submission is already stored
import os
import smtplib
import ssl
import threading
from email.message import EmailMessage
from typing import Optional, Tuple

from markupsafe import escape

MAIL_SENDER_NAME = os.getenv("MAIL_SENDER_NAME", "FDB Quick System")
MAIL_REPLY_TO = os.getenv("MAIL_REPLY_TO", "")
MAIL_ASYNC = os.getenv("MAIL_ASYNC", "0").lower() in ("1", "true", "yes")


def build_result_email(email: str, score: int, result: str) -> Tuple[str, str]:
    """Returns (subject, plain-text body)."""
    passed = result == "Pass"
    subject = "🎉 Congratulations! You Passed" if passed else "😢 Sorry, You Didn't Pass"
    if passed:
        lead = ("🎉 Congratulations! You passed the quiz! Great job on your effort and knowledge. "
                "Keep up the excellent work!")
    else:
        lead = ("😢 Sorry, you didn't pass the quiz this time. Don't worry, you gave it your best shot! "
                "Review the material and try again when you're ready. We're here to help you succeed!")
    body = (
        f"Hi {email},\n\n"
        f"{lead}\n\n"
        f"Your score: {score}\n\n"
        "Thank you for participating! If you have any questions or need further assistance, "
        "feel free to reach out. We're always here to support you.\n\n"
        "See you next time!"
    )
    return subject, body


class SmtpMailSender:
    def __init__(self, host: Optional[str] = None, port: Optional[int] = None,
                 user: Optional[str] = None, password: Optional[str] = None,
                 from_addr: Optional[str] = None, use_ssl: Optional[bool] = None):
        self.host = host if host is not None else os.getenv("SMTP_HOST", "")
        self.port = port if port is not None else int(os.getenv("SMTP_PORT", "587"))
        self.user = user if user is not None else os.getenv("SMTP_USER", "")
        self.password = password if password is not None else os.getenv("SMTP_PASS", "")
        self.from_addr = from_addr if from_addr is not None else os.getenv("SMTP_FROM", self.user)
        if use_ssl is None:
            use_ssl = os.getenv("SMTP_USE_SSL", "").lower() in ("1", "true", "yes", "on")
        self.use_ssl = use_ssl

    @property
    def enabled(self) -> bool:
        return bool(self.host and self.from_addr)

    def send(self, to: str, subject: str, body: str,
             sender_name: str = MAIL_SENDER_NAME, reply_to: str = MAIL_REPLY_TO) -> bool:
        if not self.enabled:
            print("[mail] disabled: SMTP_HOST/SMTP_FROM not configured", flush=True)
            return False
        msg = EmailMessage()
        msg["From"] = f"{sender_name} <{self.from_addr}>" if sender_name else self.from_addr
        msg["To"] = to
        if reply_to:
            msg["Reply-To"] = reply_to
        msg["Subject"] = subject
        msg.set_content(body)
        html = "".join(f"<p>{escape(p)}</p>" for p in body.split("\n\n"))
        msg.add_alternative(f"<html><body>{html}</body></html>", subtype="html")

        if self.use_ssl:
            with smtplib.SMTP_SSL(self.host, self.port, context=ssl.create_default_context(), timeout=30) as s:
                if self.user and self.password:
                    s.login(self.user, self.password)
                s.send_message(msg)
        else:
            with smtplib.SMTP(self.host, self.port, timeout=30) as s:
                s.ehlo()
                if s.has_extn("starttls"):
                    s.starttls(context=ssl.create_default_context())
                    s.ehlo()
                if self.user and self.password:
                    s.login(self.user, self.password)
                s.send_message(msg)
        return True


def deliver_notice(notice, sender, sender_name: str = MAIL_SENDER_NAME,
                   reply_to: str = MAIL_REPLY_TO) -> bool:
    """Best effort: failures are logged, never raised."""
    if notice is None or sender is None:
        return False
    try:
        subject, body = build_result_email(notice.email, notice.score, notice.result)
        sent = sender.send(notice.email, subject, body, sender_name=sender_name, reply_to=reply_to)
        if sent:
            print(f"[mail] result sent to {notice.email}", flush=True)
        return bool(sent)
    except Exception as e:
        print(f"[mail] sending to {notice.email} failed: {e}", flush=True)
        return False


def dispatch_notice(notice, sender, run_async: bool = MAIL_ASYNC) -> None:
    if run_async:
        threading.Thread(target=deliver_notice, args=(notice, sender), daemon=True).start()
    else:
        deliver_notice(notice, sender)


__all__ = ["build_result_email", "SmtpMailSender", "deliver_notice", "dispatch_notice"]
