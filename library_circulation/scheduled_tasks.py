"""
Scheduled background tasks for the circulation engine.

Tasks include:
- Expiring reservations past their window (hourly)
- Re-computing fines of overdue loans (hourly)
- Repairing drifted fine balances (daily)
- Re-running allocation for books with copies and a queue (every 15 minutes)
- Sending one overdue notice per overdue loan (hourly)

Each task is a small component that receives the application, its clock and
its notifier explicitly. A failed run is logged and retried by the next tick.
"""
import logging
from typing import List, Optional

from extensions import scheduler
from models.allocation import AutoAllocator
from models.borrow import BorrowRecord
from models.fine import Fine
from models.reservation import Reservation
from models.system_log import SystemLog
from utils.clock import Clock
from utils.notifier import NotificationDispatcher

logger = logging.getLogger(__name__)


class ScheduledJob:
    """Base class for periodic jobs.

    Subclasses set ``job_id``, ``name`` and ``interval_setting`` (the config
    key holding the interval in minutes) and implement ``execute``.
    """

    job_id: str = ''
    name: str = ''
    interval_setting: str = ''

    def __init__(self, app, clock: Optional[Clock] = None,
                 notifier: Optional[NotificationDispatcher] = None) -> None:
        self.app = app
        self.clock = clock or app.extensions['clock']
        self.notifier = notifier or app.extensions['notifier']

    @property
    def interval_minutes(self) -> int:
        return self.app.config[self.interval_setting]

    def execute(self) -> int:
        raise NotImplementedError

    def describe(self, count: int) -> str:
        return f'{count} item(s) processed'

    def run(self) -> Optional[int]:
        """Run one tick inside an application context.

        Returns:
            Number of items changed, or None when the run failed.
        """
        with self.app.app_context():
            try:
                count = self.execute()
                if count:
                    logger.info("%s: %s", self.name, self.describe(count))
                    SystemLog.add(
                        f'Scheduled Task: {self.name}',
                        self.describe(count),
                        'system',
                        None
                    )
                return count
            except Exception as e:
                logger.exception("Error in %s", self.job_id)
                SystemLog.add(
                    'Scheduled Task Error',
                    f'{self.name} failed: {str(e)}',
                    'error',
                    None
                )
                return None


class ReservationExpiryJob(ScheduledJob):
    """Expires active reservations whose window has passed."""

    job_id = 'expire_reservations'
    name = 'Expire Reservations'
    interval_setting = 'EXPIRY_SWEEP_MINUTES'

    def execute(self) -> int:
        expired = Reservation.expire_stale_details(self.clock.now())
        for reservation in expired:
            self.notifier.dispatch(
                reservation.user_email,
                'Reservation Expired',
                f'Hello {reservation.user_name},\n\nYour reservation made on '
                f'{reservation.reservation_date} has expired because no copy became '
                'available in time. You can reserve the book again.\n\n'
                'Best regards,\nLibrary Team'
            )
        return len(expired)

    def describe(self, count: int) -> str:
        return f'Expired {count} reservation(s)'


class OverdueFineSweepJob(ScheduledJob):
    """Brings the fines of every overdue loan up to date."""

    job_id = 'sweep_overdue_fines'
    name = 'Overdue Fine Sweep'
    interval_setting = 'FINE_SWEEP_MINUTES'

    def execute(self) -> int:
        return Fine.sweep_overdue(self.clock.now())

    def describe(self, count: int) -> str:
        return f'Updated fines on {count} overdue borrow(s)'


class FineReconciliationJob(ScheduledJob):
    """Repairs fine balances that drifted from the borrow records."""

    job_id = 'reconcile_fine_balances'
    name = 'Fine Balance Reconciliation'
    interval_setting = 'RECONCILIATION_MINUTES'

    def execute(self) -> int:
        return len(Fine.repair_balances())

    def describe(self, count: int) -> str:
        return f'Repaired the fine balance of {count} user(s)'


class AllocationQueueJob(ScheduledJob):
    """Runs allocation for every book with copies on the shelf and a queue."""

    job_id = 'process_allocation_queue'
    name = 'Allocation Queue'
    interval_setting = 'ALLOCATION_SWEEP_MINUTES'

    def execute(self) -> int:
        results = AutoAllocator.process_queue(self.notifier, self.clock.now())
        return sum(len(r.granted) for r in results)

    def describe(self, count: int) -> str:
        return f'Allocated {count} copy(ies) to queued readers'


class OverdueNoticeJob(ScheduledJob):
    """Tells borrowers once that their loan is overdue."""

    job_id = 'send_overdue_notices'
    name = 'Overdue Notices'
    interval_setting = 'OVERDUE_NOTICE_MINUTES'

    def execute(self) -> int:
        now = self.clock.now()
        records = BorrowRecord.claim_overdue_notices(now)
        for record in records:
            book = record.get_book()
            title = book.title if book else record.book_id
            fine = Fine.calculate_fine(record.due_datetime, now)
            self.notifier.dispatch(
                record.user_email,
                'Book Overdue - Return Required',
                f'Hello {record.user_name},\n\nThe book "{title}" was due on '
                f'{record.due_date} and has not been returned yet.\n\n'
                f'Current fine: {fine:,.2f}. The fine keeps growing every hour '
                'until the book is returned.\n\nBest regards,\nLibrary Team'
            )
        return len(records)

    def describe(self, count: int) -> str:
        return f'Sent {count} overdue notice(s)'


JOB_CLASSES = (ReservationExpiryJob, OverdueFineSweepJob,
               FineReconciliationJob, AllocationQueueJob, OverdueNoticeJob)


def build_jobs(app) -> List[ScheduledJob]:
    return [job_class(app) for job_class in JOB_CLASSES]


def register_jobs(target_scheduler, app) -> List[ScheduledJob]:
    """Add every periodic job to ``target_scheduler``."""
    jobs = build_jobs(app)
    for job in jobs:
        target_scheduler.add_job(
            func=job.run,
            trigger='interval',
            minutes=job.interval_minutes,
            id=job.job_id,
            name=job.name,
            replace_existing=True,
            coalesce=True,
            max_instances=1
        )
    return jobs


def start_scheduler(app):
    """Start the background scheduler."""
    if not app.config['SCHEDULER_ENABLED']:
        logger.info("Scheduler disabled by configuration")
        return
    register_jobs(scheduler, app)
    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduled tasks started successfully")

        with app.app_context():
            try:
                SystemLog.add(
                    'System Startup',
                    'Background task scheduler started',
                    'system',
                    None
                )
            except Exception as e:
                logger.error(f"Error logging scheduler startup: {e}")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduled tasks shut down")
