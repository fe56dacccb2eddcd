"""
Best-effort e-mail notifications.

``send()`` delivers one message and raises ``NotifierError`` on failure.
``notify()`` is what the rest of the service calls: it hands the message to
a background worker, logs any failure and never raises.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import requests

logger = logging.getLogger(__name__)


class NotifierError(Exception):
    pass


@dataclass(frozen=True)
class EmailMessage:
    to: tuple
    subject: str
    text: str | None = None
    html: str | None = None
    sender: str | None = None
    reply_to: str | None = None

    def __post_init__(self):
        if not self.html and not self.text:
            raise ValueError("EmailMessage requires at least one of: html or text")
        if isinstance(self.to, str):
            object.__setattr__(self, "to", (self.to,))

    @classmethod
    def plain(cls, to, subject, text, **kwargs):
        return cls(to=to, subject=subject, text=text, **kwargs)

    @classmethod
    def rich(cls, to, subject, html, text=None, **kwargs):
        return cls(to=to, subject=subject, html=html, text=text, **kwargs)

    def to_payload(self, default_from, default_reply_to=None):
        payload = {
            "from": self.sender or default_from,
            "to": list(self.to),
            "subject": self.subject,
        }
        reply_to = self.reply_to or default_reply_to
        if reply_to:
            payload["reply_to"] = reply_to
        if self.html:
            payload["html"] = self.html
        if self.text:
            payload["text"] = self.text
        return payload


class BaseNotifier:
    def __init__(self, executor=None):
        self._executor = executor

    def send(self, message):
        raise NotImplementedError

    def notify(self, to, subject, text):
        """
        Fire-and-forget plain-text message. Returns immediately when a
        background executor is configured.
        """
        message = EmailMessage.plain(to, subject, text)
        if self._executor is None:
            self._deliver(message)
            return
        try:
            self._executor.submit(self._deliver, message)
        except RuntimeError:
            # executor already shut down
            logger.warning("Dropped notification %r to %s", subject, message.to)

    def _deliver(self, message):
        try:
            return self.send(message)
        except Exception as e:
            logger.warning(
                "Failed to send notification %r to %s: %s",
                message.subject,
                ", ".join(message.to),
                e,
            )
            return None

    def shutdown(self):
        if self._executor is not None:
            self._executor.shutdown(wait=False)


class ResendNotifier(BaseNotifier):
    """
    Sends through the Resend HTTP API.
    """

    def __init__(self, api_key, api_url, default_from, reply_to=None,
                 timeout=5, executor=None):
        super().__init__(executor)
        self.api_key = api_key
        self.api_url = api_url
        self.default_from = default_from
        self.reply_to = reply_to
        self.timeout = timeout

    def send(self, message):
        try:
            resp = requests.post(
                self.api_url,
                json=message.to_payload(self.default_from, self.reply_to),
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise NotifierError(f"Resend send failed: {e}") from e

        if not resp.ok:
            try:
                detail = resp.json().get("message") or resp.text
            except ValueError:
                detail = resp.text
            raise NotifierError(
                f"Resend send failed: {resp.status_code} {detail or 'Unknown error'}"
            )

        data = resp.json()
        logger.info("Sent %r to %s -> %s", message.subject, message.to, data.get("id"))
        return data


class LogNotifier(BaseNotifier):
    """
    Development notifier: writes messages to the log instead of sending.
    """

    def send(self, message):
        logger.info(
            "[mail to %s] %s: %s",
            ", ".join(message.to),
            message.subject,
            message.text or message.html,
        )
        return {"id": None}


def build_notifier(config):
    executor = ThreadPoolExecutor(
        max_workers=config.get("NOTIFIER_WORKERS", 2),
        thread_name_prefix="notifier",
    )
    api_key = config.get("RESEND_API_KEY")
    if not api_key:
        logger.warning("RESEND_API_KEY is not set; notifications will only be logged")
        return LogNotifier(executor=executor)

    return ResendNotifier(
        api_key=api_key,
        api_url=config["RESEND_API_URL"],
        default_from=config["MAIL_FROM"],
        reply_to=config.get("MAIL_REPLY_TO"),
        timeout=config.get("NOTIFIER_TIMEOUT", 5),
        executor=executor,
    )
