"""Notification emails for finalized grants.

Messages are rendered with Jinja2 and handed to a single background sender
thread through a small bounded queue. The SMTP connection is opened on demand
and closed again after a quiet period. Delivery is best-effort: failures are
logged and the message is dropped.
"""

from __future__ import annotations

import logging
import mimetypes
import queue
import smtplib
import threading
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any, Callable, Dict, List, Optional

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateError,
    select_autoescape,
)

from sitesync.errors import NotificationError
from sitesync.settings import EmailSettings
from sitesync.telemetry import metrics

_log = logging.getLogger(__name__)

ALLOWED_TYPES = frozenset({"granted", "revoked", "test"})

SmtpFactory = Callable[[], Any]


@dataclass
class EmailOptions:
    # Club, society or project the website belongs to
    csp: str = ""
    email: str = ""
    # Display name shown alongside the address in the To header
    email_name: str = ""
    first_name: str = ""
    # Website folder, same as the site name
    folder: str = ""
    subject: str = ""
    # One of ALLOWED_TYPES
    type: str = ""


class EmailRenderer:
    def __init__(self, settings: EmailSettings) -> None:
        self._settings = settings
        loaders: List[Any] = []
        tpl_dir = settings.resources_path / "tpl"
        if tpl_dir.is_dir():
            loaders.append(FileSystemLoader(str(tpl_dir)))
        loaders.append(PackageLoader("sitesync", "templates/email"))
        self._env = Environment(
            loader=ChoiceLoader(loaders),
            autoescape=select_autoescape(["html"]),
            undefined=StrictUndefined,
        )

    def _inline_images(self) -> Dict[str, bytes]:
        images: Dict[str, bytes] = {}
        img_dir = self._settings.resources_path / "img"
        for name in self._settings.inline_images:
            path = img_dir / name
            try:
                images[name] = path.read_bytes()
            except OSError:
                _log.debug("email: inline image %s not found, skipping", path)
        return images

    def render_body(self, options: EmailOptions, images: Optional[Dict[str, bytes]] = None) -> str:
        if options.type not in ALLOWED_TYPES:
            raise NotificationError(f"email: Unknown message type {options.type}")
        try:
            template = self._env.get_template(f"{options.type}.html")
            return template.render(
                name=options.first_name,
                csp=options.csp,
                folder=options.folder,
                subject=options.subject,
                images=sorted(images or {}),
            )
        except TemplateError as exc:
            raise NotificationError(f"email: Rendering template {options.type}: {exc}") from exc

    def render(self, options: EmailOptions) -> EmailMessage:
        images = self._inline_images()
        body = self.render_body(options, images)

        sender = self._settings.sender
        msg = EmailMessage()
        # Ledger data goes straight into headers; non-ASCII addresses and
        # embedded CR/LF are rejected here.
        try:
            msg["From"] = formataddr((sender.name, sender.email))
            msg["To"] = formataddr((options.email_name, options.email))
            msg["Subject"] = options.subject
            msg.set_content(body, subtype="html")
            for name, data in images.items():
                maintype, _, subtype = (mimetypes.guess_type(name)[0] or "image/jpeg").partition("/")
                msg.add_related(
                    data,
                    maintype=maintype,
                    subtype=subtype,
                    cid=f"<{name}>",
                    disposition="inline",
                    filename=name,
                )
        except (ValueError, UnicodeError) as exc:
            raise NotificationError(
                f"email: Building message to {options.email!r}: {exc}"
            ) from exc
        return msg


_STOP = object()


class EmailWorker:
    """Single background sender draining a bounded queue."""

    def __init__(
        self,
        settings: EmailSettings,
        *,
        renderer: Optional[EmailRenderer] = None,
        smtp_factory: Optional[SmtpFactory] = None,
    ) -> None:
        self._settings = settings
        self._renderer = renderer or EmailRenderer(settings)
        self._smtp_factory = smtp_factory or self._dial
        self._q: "queue.Queue[Any]" = queue.Queue(maxsize=settings.queue_size)
        self._lock = threading.RLock()
        self._thread: Optional[threading.Thread] = None
        self._stats: Dict[str, int] = {"queued": 0, "sent": 0, "failed": 0}

    def _dial(self) -> smtplib.SMTP:
        cfg = self._settings
        smtp = smtplib.SMTP(cfg.host, cfg.port, timeout=cfg.timeout_s)
        if cfg.starttls:
            smtp.starttls()
        if cfg.username:
            smtp.login(cfg.username, cfg.password.get_secret_value())
        return smtp

    @property
    def running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._stats)

    def start(self) -> None:
        """Check the SMTP server is reachable, then start the sender thread."""
        _log.debug("email: Starting send worker ...")
        with self._lock:
            if self.running:
                _log.debug("email: Send worker already running")
                return
            try:
                conn = self._smtp_factory()
            except (OSError, smtplib.SMTPException) as exc:
                raise NotificationError(f"email: Error dialing smtp: {exc}") from exc
            self._close(conn)
            self._thread = threading.Thread(target=self._run, name="email-worker", daemon=True)
            self._thread.start()
        _log.info("email: Send worker started")

    def enqueue(self, options: EmailOptions) -> None:
        """Render and queue one message; blocks while the queue is full."""
        msg = self._renderer.render(options)
        if not self.running:
            raise NotificationError("email: Send worker is not running")
        with self._lock:
            self._stats["queued"] += 1
        self._q.put(msg)

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Wait for every queued message to be handled, then stop the thread."""
        with self._lock:
            thread = self._thread
        if thread is None:
            return
        if thread.is_alive():
            self._q.put(_STOP)
            thread.join(timeout)
        with self._lock:
            if self._thread is thread and not thread.is_alive():
                self._thread = None

    # ------------------------------------------------------------------ worker

    def _close(self, conn: Any) -> None:
        try:
            conn.quit()
        except (OSError, smtplib.SMTPException) as exc:
            _log.warning("email: Error closing smtp: %s", exc)

    def _count(self, key: str) -> None:
        with self._lock:
            self._stats[key] += 1
        metrics.inc(metrics.emails_total, key)

    def _run(self) -> None:
        conn: Any = None
        try:
            while True:
                try:
                    msg = self._q.get(timeout=self._settings.idle_timeout_s)
                except queue.Empty:
                    # Quiet period: drop the idle connection, keep waiting.
                    if conn is not None:
                        self._close(conn)
                        conn = None
                    continue
                if msg is _STOP:
                    break
                recipient = msg["To"]
                if conn is None:
                    try:
                        conn = self._smtp_factory()
                    except (OSError, smtplib.SMTPException) as exc:
                        _log.warning("email: Sending to %s: Error dialing smtp: %s", recipient, exc)
                        self._count("failed")
                        continue
                _log.info("email: Sending to %s", recipient)
                try:
                    conn.send_message(msg)
                except (OSError, smtplib.SMTPException) as exc:
                    _log.warning("email: Sending to %s: Error sending message: %s", recipient, exc)
                    self._count("failed")
                    self._close(conn)
                    conn = None
                    continue
                self._count("sent")
        finally:
            if conn is not None:
                self._close(conn)
            _log.info("email: Send worker stopped")


__all__ = ["ALLOWED_TYPES", "EmailOptions", "EmailRenderer", "EmailWorker"]
