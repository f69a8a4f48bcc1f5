# backend/scheduler.py
import logging
from datetime import datetime, timedelta, timezone
from typing import List
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError

import config
from database import SessionLocal
from models import Booking, STATUS_CONFIRMED
from notifications import NotificationDispatcher, NotificationQueue

logger = logging.getLogger(__name__)


def booking_clock_now(zone_name: str = None) -> datetime:
    """Current wall-clock time in the zone booking dates and times are written in (naive)"""
    zone_name = zone_name or config.BOOKING_TIMEZONE
    zone = timezone.utc if zone_name.upper() == "UTC" else ZoneInfo(zone_name)
    return datetime.now(zone).replace(tzinfo=None)


class BookingScheduler:
    """
    Scheduler for background tasks:
    - Deliver queued notifications
    - Send reminders for upcoming confirmed bookings
    """

    def __init__(self, dispatcher: NotificationDispatcher, notification_queue: NotificationQueue,
                 session_factory=SessionLocal):
        self.scheduler = AsyncIOScheduler()
        self.dispatcher = dispatcher
        self.queue = notification_queue
        self.session_factory = session_factory
        self.is_running = False

    def start(self):
        """Start the scheduler"""
        if self.is_running:
            logger.warning("Scheduler is already running")
            return

        self._schedule_tasks()
        self.scheduler.start()
        self.is_running = True
        logger.info("Scheduler started successfully")

    async def shutdown(self):
        """Shutdown the scheduler, delivering anything still queued"""
        if not self.is_running:
            return

        self.scheduler.shutdown(wait=False)
        self.is_running = False
        await self.deliver_notifications()
        logger.info("Scheduler shut down")

    def _schedule_tasks(self):
        """Schedule all periodic tasks"""

        self.scheduler.add_job(
            self.deliver_notifications,
            trigger=IntervalTrigger(seconds=config.NOTIFICATION_FLUSH_SECONDS),
            id='deliver_notifications',
            name='Deliver Queued Notifications',
            replace_existing=True,
            max_instances=1,
        )

        # Every hour at :00
        self.scheduler.add_job(
            self.send_booking_reminders,
            trigger=CronTrigger(minute=0),
            id='send_reminders',
            name='Send Booking Reminders',
            replace_existing=True,
        )

        logger.info("Scheduled tasks configured")

    async def deliver_notifications(self):
        try:
            delivered = await self.dispatcher.flush()
        except Exception as e:
            logger.error(f"Error delivering notifications: {e}")
            return
        if delivered:
            logger.info(f"Delivered {delivered} notifications")

    async def send_booking_reminders(self, now: datetime = None) -> int:
        """
        Queue reminders for confirmed bookings starting within the lookahead window.
        Booking date and time are wall-clock values in BOOKING_TIMEZONE, so `now`
        is taken on that clock.
        """
        logger.info("Running: Send booking reminders")
        now = now or booking_clock_now()
        horizon = now + timedelta(hours=config.REMINDER_LOOKAHEAD_HOURS)

        db = self.session_factory()
        try:
            candidates = db.query(Booking).filter(
                Booking.status == STATUS_CONFIRMED,
                Booking.reminder_sent.is_(False),
                Booking.date >= now.date(),
                Booking.date <= horizon.date(),
            ).all()

            reminded = []
            for booking in candidates:
                starts_at = datetime.combine(booking.date, booking.time)
                if not now <= starts_at <= horizon:
                    continue
                hours_until = int((starts_at - now).total_seconds() // 3600)
                service_name = booking.service.name if booking.service else "consultation"
                message = (
                    f"Reminder: your {service_name} is on {starts_at:%A, %B %d, %Y} at {starts_at:%H:%M} "
                    f"({booking.duration} minutes), in about {hours_until} hours."
                )
                booking.reminder_sent = True
                reminded.append((booking.client.user_id, booking.consultant.user_id, message))

            db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error in send_booking_reminders: {e}")
            db.rollback()
            return 0
        finally:
            db.close()

        for client_user_id, consultant_user_id, message in reminded:
            self.queue.notify(client_user_id, "reminder", message)
            self.queue.notify(consultant_user_id, "reminder", message)

        logger.info(f"Queued {len(reminded)} booking reminders")
        return len(reminded)

    def get_scheduled_jobs(self) -> List[dict]:
        """Get list of scheduled jobs"""
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append({
                'id': job.id,
                'name': job.name,
                'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
                'trigger': str(job.trigger)
            })
        return jobs
