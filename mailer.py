import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from config import Settings

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    ok: bool
    error: Optional[str] = None


class Mailer:
    """
    Transactional email over MailerSend.

    send() never raises: failures come back as SendResult(ok=False) and the
    caller decides whether that matters. Without an API key the message is
    only logged and reported as sent, which keeps local development usable.
    """

    def __init__(self, settings: Settings):
        self._api_key = settings.mailersend_api_key
        self._from_email = settings.sender_email
        self._from_name = settings.sender_name

    async def send(self, to: str, subject: str, html: str,
                   text: Optional[str] = None, from_name: Optional[str] = None) -> SendResult:
        if not self._api_key:
            logger.warning(f"MAILERSEND: API key not configured, not sending. To: {to}, Subject: {subject}")
            return SendResult(ok=True)
        try:
            await asyncio.to_thread(self._send_sync, to, subject, html, text, from_name)
        except Exception as e:
            logger.error(f"MAILERSEND ERROR: sending '{subject}' to {to} failed: {e}", exc_info=True)
            return SendResult(ok=False, error=str(e))
        logger.info(f"MAILERSEND: Email '{subject}' sent to {to}")
        return SendResult(ok=True)

    def _send_sync(self, to, subject, html, text, from_name):
        from mailersend import MailerSendClient, EmailBuilder

        builder = (
            EmailBuilder()
            .from_email(self._from_email, from_name or self._from_name)
            .to_many([{"email": to}])
            .subject(subject)
            .html(html)
        )
        if text:
            builder = builder.text(text)

        client = MailerSendClient(api_key=self._api_key)
        response = client.emails.send(builder.build())
        status = getattr(response, "status_code", None)
        if status is not None and status not in (200, 202):
            raise RuntimeError(f"MailerSend responded {status}")

    async def send_otp(self, to: str, name: Optional[str], code: str, ttl_seconds: int) -> SendResult:
        html = f"""
            <div style="font-family: monospace; padding: 20px; border: 2px solid #000; background: #eee;">
                <h2 style="color: #000; text-transform: uppercase;">Identity Verification</h2>
                <p>Agent <strong>{name or 'Operative'}</strong>,</p>
                <p>Use the following clearance code to proceed with registration:</p>
                <div style="font-size: 32px; font-weight: bold; letter-spacing: 5px; margin: 20px 0; color: #8B5CF6;">
                    {code}
                </div>
                <p style="font-size: 10px; color: #666;">EXPIRES IN {ttl_seconds} SECONDS. DO NOT SHARE.</p>
            </div>
        """
        text = f"Your VexStorm 26 verification code is {code}. It expires in {ttl_seconds // 60} minutes."
        return await self.send(to, "Access Code: Verify Identity", html, text=text)

    async def send_registration_confirmation(self, to: str, leader_name: str,
                                             team_name: str, registration_id: str) -> SendResult:
        html = f"""
            <div style="font-family: sans-serif; padding: 20px; border: 1px solid #eee; border-radius: 12px;">
                <div style="background-color: #8B5CF6; padding: 24px; color: white; text-align: center;">
                    <h2 style="margin: 0; font-size: 24px;">Registration Received!</h2>
                </div>
                <div style="padding: 24px;">
                    <p>Hi <strong>{leader_name}</strong>,</p>
                    <p>Your team <strong>{team_name}</strong> has successfully submitted their entry for VexStorm 26.</p>
                    <p style="background: #f3f4f6; padding: 15px; border-radius: 8px; font-family: monospace;">
                        <strong>Registration ID:</strong> {registration_id}
                    </p>
                    <p><strong>Next Steps:</strong> We are currently in the selection phase. Once the top teams
                    are shortlisted, we will reach out with details on final confirmation and payment.</p>
                    <br/>
                    <p>Best regards,<br/>Team DataVex</p>
                </div>
            </div>
        """
        result = await self.send(to, "Registration Received - VexStorm 26", html)
        if not result.ok:
            logger.error(f"REGISTRATION: Confirmation email for {registration_id} failed: {result.error}")
        return result
