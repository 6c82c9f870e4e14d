import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import resend
from jinja2 import Environment, FileSystemLoader, select_autoescape
from supabase import Client
from tenacity import RetryError, retry, stop_after_attempt, wait_exponential

from app.core.config import ResendConfig, SMTPConfig
from app.lib.api_client import supabase_admin

logger = logging.getLogger("marginalia.mail")

_DEFAULT_SENDER = "Marginalia <no-reply@marginalia.local>"


class EmailStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"


class EmailService:
    _SENTINEL = object()

    def __init__(
        self,
        *,
        smtp_config: SMTPConfig | None | object = _SENTINEL,
        resend_config: ResendConfig | None | object = _SENTINEL,
        supabase_client: Client | None | object = _SENTINEL,
    ):
        # 中文注释:
        # - smtp_config / resend_config 支持依赖注入，方便单测与不同环境切换。
        # - 若调用方显式传 None，则视为禁用该 provider。
        if smtp_config is self._SENTINEL:
            smtp_config = SMTPConfig.from_env()
        if resend_config is self._SENTINEL:
            resend_config = ResendConfig.from_env()

        self.smtp_config: SMTPConfig | None = smtp_config  # type: ignore[assignment]
        self.resend_config: ResendConfig | None = resend_config  # type: ignore[assignment]

        if self.resend_config:
            resend.api_key = self.resend_config.api_key

        # Path to templates: backend/app/core/templates
        templates_dir = Path(__file__).resolve().parent / "templates"
        self._jinja = Environment(
            loader=FileSystemLoader(str(templates_dir)),
            autoescape=select_autoescape(["html", "xml"]),
        )

        # email_logs 写入用 service_role client；显式传 None 时不记录（单测）
        if supabase_client is self._SENTINEL:
            self._supabase = supabase_admin
        else:
            self._supabase = supabase_client  # type: ignore[assignment]

    def is_configured(self) -> bool:
        return bool(self.smtp_config or self.resend_config)

    def render_template(self, template_name: str, context: Dict[str, Any]) -> str:
        return self._jinja.get_template(template_name).render(**context)

    def _send_smtp(self, *, to_email: str, subject: str, html_body: str, text_body: str | None) -> None:
        assert self.smtp_config is not None
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.smtp_config.from_email
        msg["To"] = to_email

        if text_body:
            msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        with smtplib.SMTP(self.smtp_config.host, self.smtp_config.port) as server:
            if self.smtp_config.use_starttls:
                server.starttls()
            if self.smtp_config.user and self.smtp_config.password:
                server.login(self.smtp_config.user, self.smtp_config.password)
            server.sendmail(self.smtp_config.from_email, [to_email], msg.as_string())

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=2, max=10))
    def _send_with_retry(self, to_email: str, subject: str, html_content: str) -> Any:
        params = {
            "from": self.resend_config.sender if self.resend_config else _DEFAULT_SENDER,
            "to": [to_email],
            "subject": subject,
            "html": html_content,
        }
        return resend.Emails.send(params)

    def send_email(
        self,
        *,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str | None = None,
    ) -> bool:
        """
        发送邮件（同步）。

        中文注释:
        - 优先 SMTP；SMTP 未配置但 Resend 已配置时走 Resend（tenacity 重试 3 次）。
        - 发送失败返回 False，不抛异常：通知是 post-commit 副作用，不能影响主流程。
        """
        if self.smtp_config:
            try:
                self._send_smtp(to_email=to_email, subject=subject, html_body=html_body, text_body=text_body)
                return True
            except Exception as e:
                logger.warning("[SMTP] send failed: %s", e)
                return False

        if self.resend_config:
            try:
                self._send_with_retry(to_email, subject, html_body)
                return True
            except RetryError as e:
                logger.warning("[Resend] send failed after retries: %s", e.last_attempt.exception())
                return False
            except Exception as e:
                logger.warning("[Resend] send failed: %s", e)
                return False

        return False

    def send_template_email(
        self,
        *,
        to_email: str,
        subject: str,
        template_name: str,
        context: Dict[str, Any],
    ) -> bool:
        if not self.is_configured():
            logger.info("[Email] no provider configured, skipping '%s' to %s", subject, to_email)
            return False
        try:
            html = self.render_template(template_name, context)
        except Exception as e:
            logger.warning("[Email] template render failed: %s", e)
            return False
        ok = self.send_email(to_email=to_email, subject=subject, html_body=html)
        self._log_attempt(
            to_email,
            subject,
            template_name,
            EmailStatus.SENT if ok else EmailStatus.FAILED,
            error_message=None if ok else "send failed",
        )
        return ok

    def _log_attempt(
        self,
        recipient: str,
        subject: str,
        template_name: str,
        status: EmailStatus,
        error_message: Optional[str] = None,
    ) -> None:
        if self._supabase is None:
            return
        try:
            self._supabase.table("email_logs").insert(
                {
                    "recipient": recipient,
                    "subject": subject,
                    "template_name": template_name,
                    "status": status.value,
                    "error_message": error_message,
                }
            ).execute()
        except Exception as e:
            logger.warning("[Email] failed to log email attempt (ignored): %s", e)


# Global instance
email_service = EmailService()
