"""
Alert Service
Sends failure alerts for the export pipeline via email and Slack.

Alerts are fire-and-forget from the pipeline's point of view: notify_failure
never raises, and a failed delivery is only logged.
"""
import smtplib
import asyncio
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Any, Dict, List, Optional
import aiohttp
from datetime import datetime
from dataclasses import dataclass, field

from shipsync.config import get_settings
from shipsync.utils.logger import log
from shipsync.utils.retry import calculate_backoff, is_retryable_error, is_retryable_status

settings = get_settings()

PRIORITY_COLORS = {
    'critical': '#dc3545',
    'high': '#fd7e14',
    'medium': '#ffc107',
    'low': '#28a745'
}


@dataclass
class DeliveryResult:
    """Outcome of delivering one alert over one channel."""
    success: bool = False
    channel: str = ""
    attempts: int = 0
    total_delay_seconds: float = 0.0
    errors: List[str] = field(default_factory=list)
    final_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'attempts': self.attempts,
            'total_delay_seconds': self.total_delay_seconds,
            'errors': self.errors[:5],
            'final_error': self.final_error
        }


class AlertService:
    """
    Delivers pipeline alerts with retry logic.
    """

    RETRY_MAX_ATTEMPTS = 3
    RETRY_BASE_DELAY = 2.0  # seconds
    RETRY_MAX_DELAY = 30.0  # seconds

    def __init__(self, sleep=asyncio.sleep):
        self.smtp_configured = all([
            settings.smtp_host,
            settings.smtp_user,
            settings.smtp_password,
            settings.alert_email_to
        ])
        self.slack_configured = bool(settings.slack_webhook_url)
        self._sleep = sleep

        self.total_sent = 0
        self.total_failed = 0
        self.total_retries = 0

    async def notify_failure(self, title: str, message: str, data: Optional[Dict] = None) -> bool:
        """Send a critical alert if alerts are enabled. Never raises."""
        if not settings.enable_auto_alerts:
            log.debug(f"Auto alerts disabled, not sending: {title}")
            return False
        try:
            result = await self.send_critical_alert(title, message, data)
            return result['success']
        except Exception as e:
            log.error(f"Alert delivery raised unexpectedly: {type(e).__name__}: {e}")
            return False

    async def send_critical_alert(
        self,
        title: str,
        message: str,
        data: Optional[Dict] = None
    ) -> Dict[str, Any]:
        """
        Send a critical alert via every configured channel.

        Returns:
            Dict with keys: success (any channel delivered), results
            (channel -> delivery details), total_attempts
        """
        log.bind(alert=title).error(f"Critical alert: {title}: {message}")

        results = {}
        if self.smtp_configured:
            results['email'] = await self.send_email_alert(title, message, data, priority='critical')
        if self.slack_configured:
            results['slack'] = await self.send_slack_alert(title, message, data, priority='critical')

        if not results:
            log.warning("No alert channels configured; alert logged only")

        return {
            'success': any(r.success for r in results.values()),
            'results': {ch: r.to_dict() for ch, r in results.items()},
            'total_attempts': sum(r.attempts for r in results.values()),
        }

    async def _backoff(self, result: DeliveryResult, attempt: int, reason: str) -> None:
        delay = calculate_backoff(
            attempt,
            base_delay=self.RETRY_BASE_DELAY,
            max_delay=self.RETRY_MAX_DELAY
        )
        result.total_delay_seconds += delay
        log.warning(f"{result.channel.title()} attempt {attempt} failed: {reason}. Retrying in {delay:.1f}s...")
        await self._sleep(delay)

    def _succeeded(self, result: DeliveryResult, title: str) -> DeliveryResult:
        result.success = True
        self.total_sent += 1
        if result.attempts > 1:
            self.total_retries += result.attempts - 1
        log.info(f"{result.channel.title()} alert sent after {result.attempts} attempt(s): {title}")
        return result

    def _gave_up(self, result: DeliveryResult, error: str) -> DeliveryResult:
        result.final_error = error
        self.total_failed += 1
        log.error(f"{result.channel.title()} alert failed after {result.attempts} attempts: {error}")
        return result

    async def send_email_alert(
        self,
        title: str,
        message: str,
        data: Optional[Dict] = None,
        priority: str = 'medium'
    ) -> DeliveryResult:
        """Send an email alert, retrying transient SMTP failures."""
        result = DeliveryResult(channel='email')

        if not self.smtp_configured:
            result.final_error = "Email not configured"
            return result

        msg = MIMEMultipart('alternative')
        msg['Subject'] = f"[{priority.upper()}] {title}"
        msg['From'] = settings.alert_email_from or settings.smtp_user
        msg['To'] = settings.alert_email_to
        msg.attach(MIMEText(message, 'plain'))
        msg.attach(MIMEText(self._create_html_email(title, message, data, priority), 'html'))

        for attempt in range(1, self.RETRY_MAX_ATTEMPTS + 1):
            result.attempts = attempt
            try:
                with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30) as server:
                    server.starttls()
                    server.login(settings.smtp_user, settings.smtp_password)
                    server.send_message(msg)
                return self._succeeded(result, title)

            except Exception as e:
                error_str = f"{type(e).__name__}: {str(e)}"
                result.errors.append(error_str)
                if attempt >= self.RETRY_MAX_ATTEMPTS or not self._is_retryable_email_error(e):
                    return self._gave_up(result, error_str)
                await self._backoff(result, attempt, error_str)

        return self._gave_up(result, result.errors[-1] if result.errors else "Retry exhausted")

    def _is_retryable_email_error(self, error: Exception) -> bool:
        # SMTP 4xx replies are temporary
        if isinstance(error, smtplib.SMTPResponseException):
            return 400 <= error.smtp_code < 500
        return is_retryable_error(error)

    def _slack_payload(self, title: str, message: str, data: Optional[Dict], priority: str) -> Dict:
        fields = [
            {"title": "Priority", "value": priority.upper(), "short": True},
            {"title": "Timestamp", "value": datetime.utcnow().strftime("%Y-%m-%d %H:%M:%S UTC"), "short": True},
        ]
        for key, value in list((data or {}).items())[:5]:
            fields.append({"title": key.replace('_', ' ').title(), "value": str(value), "short": True})
        return {
            "attachments": [{
                "color": PRIORITY_COLORS.get(priority, '#6c757d'),
                "title": title,
                "text": message,
                "fields": fields,
                "footer": settings.app_name,
            }]
        }

    async def send_slack_alert(
        self,
        title: str,
        message: str,
        data: Optional[Dict] = None,
        priority: str = 'medium'
    ) -> DeliveryResult:
        """Post an alert to the Slack webhook, retrying 429, 5xx and transport errors."""
        result = DeliveryResult(channel='slack')

        if not self.slack_configured:
            result.final_error = "Slack not configured"
            return result

        payload = self._slack_payload(title, message, data, priority)

        for attempt in range(1, self.RETRY_MAX_ATTEMPTS + 1):
            result.attempts = attempt
            try:
                async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=30)) as session:
                    async with session.post(settings.slack_webhook_url, json=payload) as response:
                        status = response.status
            except Exception as e:
                error_str = f"{type(e).__name__}: {str(e)}"
                result.errors.append(error_str)
                if attempt >= self.RETRY_MAX_ATTEMPTS or not is_retryable_error(e):
                    return self._gave_up(result, error_str)
                await self._backoff(result, attempt, error_str)
                continue

            if status == 200:
                return self._succeeded(result, title)

            error_str = f"HTTP {status}"
            result.errors.append(error_str)
            if attempt >= self.RETRY_MAX_ATTEMPTS or not is_retryable_status(status):
                return self._gave_up(result, error_str)
            await self._backoff(result, attempt, error_str)

        return self._gave_up(result, result.errors[-1] if result.errors else "Retry exhausted")

    def _create_html_email(
        self,
        title: str,
        message: str,
        data: Optional[Dict],
        priority: str
    ) -> str:
        color = PRIORITY_COLORS.get(priority, '#6c757d')
        rows = "".join(
            f"<tr><td><b>{key.replace('_', ' ').title()}</b></td><td>{value}</td></tr>"
            for key, value in (data or {}).items()
        )
        generated = datetime.utcnow().strftime("%Y-%m-%d %H:%M:%S UTC")
        return f"""
<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; line-height: 1.6;">
    <div style="background-color: {color}; color: white; padding: 16px;">
        <h2>{title}</h2>
        <p>Priority: {priority.upper()}</p>
    </div>
    <div style="padding: 16px;">
        <p>{message.replace(chr(10), '<br>')}</p>
        <table style="width: 100%; border-collapse: collapse;">{rows}</table>
    </div>
    <p style="font-size: 12px; color: #6c757d;">{settings.app_name} | generated at {generated}</p>
</body>
</html>
"""

    def get_delivery_stats(self) -> Dict[str, Any]:
        total_attempts = self.total_sent + self.total_failed
        success_rate = (self.total_sent / total_attempts * 100) if total_attempts > 0 else 0.0
        return {
            "total_sent": self.total_sent,
            "total_failed": self.total_failed,
            "total_retries": self.total_retries,
            "success_rate": round(success_rate, 2),
            "channels_configured": {
                "email": self.smtp_configured,
                "slack": self.slack_configured
            }
        }
