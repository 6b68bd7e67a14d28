# school_library/scheduler/jobs.py
import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from school_library.core.clock import Clock
from school_library.core.config import OVERDUE_SWEEP_HOUR, SCHEDULER_TIMEZONE
from school_library.core.policy import CirculationPolicy
from school_library.core.utils import days_late
from school_library.models.enum import BorrowStatus
from school_library.models.report import OverdueSummary, SweepResult
from school_library.repositories.base import UnitOfWork

logger = logging.getLogger("scheduler_jobs")


async def sweep_overdue(uow: UnitOfWork, clock: Clock, policy: CirculationPolicy) -> SweepResult:
    """
    Mark every ISSUED record past its due date as OVERDUE and charge the
    accrued fine to the member. Each record is handled in its own
    transaction; one failing record does not stop the sweep.
    """
    now = clock.now()
    logger.info(f"Running overdue sweep at {now.isoformat()}")
    result = SweepResult()

    candidates = await uow.borrows.find_due_for_sweep(now)
    result.scanned = len(candidates)
    logger.info(f"Found {result.scanned} ISSUED records past due.")

    for candidate in candidates:
        try:
            marked = False
            async with uow.transaction() as session:
                # Re-read: a return or renewal may have won since the scan
                record = await uow.borrows.get(candidate.id, session=session)
                if record and record.status == BorrowStatus.ISSUED and record.due_date < now:
                    overdue_days = days_late(record.due_date, now)
                    fine = policy.overdue_fine(overdue_days)
                    updated = await uow.borrows.update(
                        record.id,
                        {
                            "status": BorrowStatus.OVERDUE,
                            "days_overdue": overdue_days,
                            "fine_amount": fine,
                            "updated_at": now,
                        },
                        expected_version=record.version,
                        session=session,
                    )
                    if updated:
                        await uow.members.add_fine(
                            record.member_id, fine, now, overdue_events=1, session=session
                        )
                        marked = True
                        logger.info(
                            f"Record '{record.id}' marked OVERDUE: {overdue_days} days, fine {fine}."
                        )

            if marked:
                result.marked += 1
            else:
                result.skipped += 1
                logger.info(f"Record '{candidate.id}' skipped; no longer ISSUED and past due.")
        except Exception:
            result.failed += 1
            logger.error(f"Overdue sweep failed for record '{candidate.id}'.", exc_info=True)

    logger.info(
        f"Overdue sweep finished. Scanned: {result.scanned}, Marked: {result.marked}, "
        f"Skipped: {result.skipped}, Failed: {result.failed}"
    )
    return result


async def send_overdue_notifications(uow: UnitOfWork, clock: Clock) -> int:
    """Log one reminder per OVERDUE record. Returns the number of reminders."""
    now = clock.now()
    records = await uow.borrows.find_by_status(BorrowStatus.OVERDUE)
    sent = 0
    for record in records:
        member = await uow.members.get(record.member_id)
        book = await uow.books.get(record.book_id)
        if not member or not book:
            logger.warning(f"Skipping reminder for record '{record.id}': member or book missing.")
            continue
        logger.info(
            f"Overdue reminder for {member.display_name} ({member.member_code}): "
            f"'{book.title}' is {days_late(record.due_date, now)} days overdue, "
            f"fine {record.fine_amount}."
        )
        sent += 1
    logger.info(f"Sent {sent} overdue reminders.")
    return sent


def _previous_month_range(now: datetime):
    this_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if this_month.month == 1:
        last_month = this_month.replace(year=this_month.year - 1, month=12)
    else:
        last_month = this_month.replace(month=this_month.month - 1)
    return last_month, this_month


async def generate_overdue_report(uow: UnitOfWork, clock: Clock) -> OverdueSummary:
    """Aggregate last month's overdue records (by due date) and log the totals."""
    due_from, due_to = _previous_month_range(clock.now())
    summary = await uow.borrows.overdue_summary(due_from, due_to)
    logger.info(
        f"Monthly overdue report {due_from:%Y-%m}: {summary.total_overdue} overdue, "
        f"total fines {summary.total_fines}, average days {summary.average_days_overdue}, "
        f"max days {summary.max_days_overdue}."
    )
    return summary


def build_scheduler(uow: UnitOfWork, clock: Clock, policy: CirculationPolicy) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone=SCHEDULER_TIMEZONE)
    scheduler.add_job(
        sweep_overdue,
        trigger=CronTrigger(hour=OVERDUE_SWEEP_HOUR, minute=0, timezone=SCHEDULER_TIMEZONE),
        args=[uow, clock, policy],
        id="overdue_sweep_job",
        name="Mark Overdue Borrow Records",
        replace_existing=True,
        misfire_grace_time=60 * 60,
    )
    scheduler.add_job(
        send_overdue_notifications,
        trigger=CronTrigger(day_of_week="mon", hour=9, minute=0, timezone=SCHEDULER_TIMEZONE),
        args=[uow, clock],
        id="overdue_notifications_job",
        name="Weekly Overdue Reminders",
        replace_existing=True,
        misfire_grace_time=60 * 60,
    )
    scheduler.add_job(
        generate_overdue_report,
        trigger=CronTrigger(day=1, hour=0, minute=0, timezone=SCHEDULER_TIMEZONE),
        args=[uow, clock],
        id="overdue_report_job",
        name="Monthly Overdue Report",
        replace_existing=True,
        misfire_grace_time=60 * 60,
    )
    return scheduler
