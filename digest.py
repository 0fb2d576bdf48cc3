import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from config import Settings

logger = logging.getLogger(__name__)

DIGEST_WINDOW = timedelta(hours=24)
MESSAGE_EXCERPT_CHARS = 600
JOB_ID = "daily_digest"


@dataclass
class DigestResult:
    count: int
    sent: bool
    error: Optional[str] = None


def digest_timezone(settings: Settings) -> timezone:
    return timezone(timedelta(minutes=settings.digest_utc_offset_minutes))


def _or(value, fallback="Not Specified"):
    return value if value else fallback


def _excerpt(message):
    if not message:
        return "No message provided."
    if len(message) <= MESSAGE_EXCERPT_CHARS:
        return message
    cut = message[:MESSAGE_EXCERPT_CHARS]
    # Never end inside an escaped entity such as &amp;
    amp = cut.rfind("&")
    if amp != -1 and ";" not in cut[amp:]:
        cut = cut[:amp]
    return cut.rstrip() + "&hellip;"


def render_card(contact: Dict, tz: timezone) -> str:
    # Stored values were HTML-escaped on the way in; do not escape again
    received = contact["created_at"].replace(tzinfo=timezone.utc).astimezone(tz)
    return f"""
        <div style="border: 1px solid #e5e7eb; border-radius: 8px; padding: 20px; margin-bottom: 24px; background-color: #ffffff;">
            <h3 style="margin: 0 0 16px 0; color: #4F46E5; font-size: 18px; border-bottom: 1px solid #eee; padding-bottom: 10px;">
                New Contact Submission
            </h3>
            <div style="margin-bottom: 20px;">
                <strong style="color: #111827; font-size: 14px; display: block; margin-bottom: 8px;">Contact Info</strong>
                <div>Name: {contact['name']}</div>
                <div>Email: {contact['email']}</div>
                <div>Phone: {_or(contact.get('phone'), 'N/A')}</div>
                <div>Company: {_or(contact.get('company'))}</div>
                <div>Location: {_or(contact.get('location'))}</div>
            </div>
            <div style="margin-bottom: 20px;">
                <strong style="color: #111827; font-size: 14px; display: block; margin-bottom: 8px;">Project Qualification</strong>
                <div>Project Stage: {_or(contact.get('project_stage'))}</div>
                <div>Estimated Budget: {_or(contact.get('budget'))}</div>
                <div>AI Usage: {_or(contact.get('ai_usage'))}</div>
                <div>Employees: {_or(contact.get('employees'))}</div>
                <div>Tech Experience: {_or(contact.get('experience'))}</div>
            </div>
            <div>
                <strong style="color: #111827; font-size: 14px; display: block; margin-bottom: 8px;">Main Goal &amp; Message</strong>
                <div style="background-color: #f9fafb; padding: 12px; border-radius: 6px; color: #374151; font-size: 14px; line-height: 1.5;">
                    {_excerpt(contact.get('message'))}
                </div>
            </div>
            <div style="margin-top: 12px; font-size: 12px; color: #9ca3af; text-align: right;">
                Received: {received.strftime('%d %b %Y, %I:%M %p')}
            </div>
        </div>
    """


def render_digest(contacts: List[Dict], tz: timezone) -> str:
    cards = "".join(render_card(c, tz) for c in contacts)
    return f"""
        <div style="font-family: 'Helvetica Neue', Helvetica, Arial, sans-serif; color: #333; max-width: 600px; margin: 0 auto; background-color: #f3f4f6; padding: 24px;">
            <div style="text-align: center; margin-bottom: 24px;">
                <h2 style="color: #1F2937; margin: 0;">DataVex Daily Digest</h2>
                <p style="color: #6B7280; font-size: 16px; margin-top: 8px;">
                    You received <strong>{len(contacts)}</strong> new inquiries in the last 24 hours.
                </p>
            </div>
            {cards}
        </div>
    """


async def run_daily_digest(store, mailer, settings: Settings, now: Optional[datetime] = None) -> DigestResult:
    """Mail every contact inquiry from the trailing 24 hours to the operations inbox."""
    logger.info("DIGEST: Running daily contact digest...")
    now = now or datetime.utcnow()
    try:
        contacts = await asyncio.to_thread(store.contacts_since, now - DIGEST_WINDOW)
    except Exception as e:
        logger.error(f"DIGEST: Query failed: {e}", exc_info=True)
        return DigestResult(count=0, sent=False, error=str(e))

    if not contacts:
        logger.info("DIGEST: No new contacts in the last 24h.")
        return DigestResult(count=0, sent=False)

    logger.info(f"DIGEST: Found {len(contacts)} new inquiries. Sending digest...")
    html = render_digest(contacts, digest_timezone(settings))
    result = await mailer.send(
        settings.contact_receiver,
        f"Daily Leads: {len(contacts)} New Inquiries",
        html,
        from_name="DataVex Digest",
    )
    if not result.ok:
        logger.error(f"DIGEST: Send failed: {result.error}")
        return DigestResult(count=len(contacts), sent=False, error=result.error)

    logger.info("DIGEST: Digest email sent")
    return DigestResult(count=len(contacts), sent=True)


def schedule_digest(scheduler: AsyncIOScheduler, store, mailer, settings: Settings):
    trigger = CronTrigger.from_crontab(settings.digest_cron, timezone=digest_timezone(settings))
    scheduler.add_job(
        run_daily_digest,
        trigger,
        args=[store, mailer, settings],
        id=JOB_ID,
        replace_existing=True,
    )
    logger.info(f"SCHEDULER: Daily digest scheduled with cron '{settings.digest_cron}'")
