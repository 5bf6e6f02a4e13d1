import asyncio
import logging
import signal
from datetime import timedelta

from .config import Settings, get_settings
from .database import async_session
from .domain.repositories import Notifier, OrderService, UnitOfWorkFactory, UserService
from .infrastructure.collaborators import LoggingNotifier, SqlAlchemyUserService, UnconfiguredOrderService
from .infrastructure.unit_of_work import sqlalchemy_uow_factory
from .models import JobKind, ParticipationStatus, PromotionJob, SignUp
from .usecases.promotion import deliver_promotion_notice, handle_promotion_job
from .usecases.sign_ups import RetryPolicy
from .utils.audit_log import emit_audit_log
from .utils.request_id import set_request_id
from .utils.time import utc_now

logger = logging.getLogger(__name__)

MAX_RETRY_DELAY = 300.0


class PromotionWorker:
    """
    Drains the promotion_jobs outbox: PROMOTE jobs fill a freed spot and queue a
    NOTIFY_PROMOTION job for the promoted user. A job is claimed with a lease,
    handled, then completed in a separate transaction; a crash between the two
    leaves the lease to expire and the job is delivered again.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        users: UserService,
        orders: OrderService,
        notifier: Notifier,
        *,
        retry: RetryPolicy = RetryPolicy(),
        lease_seconds: float = 60.0,
        max_attempts: int = 10,
        poll_interval: float = 1.0,
    ) -> None:
        self.uow_factory = uow_factory
        self.users = users
        self.orders = orders
        self.notifier = notifier
        self.retry = retry
        self.lease_seconds = lease_seconds
        self.max_attempts = max_attempts
        self.poll_interval = poll_interval

    @classmethod
    def from_settings(cls, settings: Settings) -> "PromotionWorker":
        return cls(
            sqlalchemy_uow_factory(async_session),
            SqlAlchemyUserService(async_session),
            UnconfiguredOrderService(),
            LoggingNotifier(),
            retry=RetryPolicy.from_settings(settings),
            lease_seconds=settings.promotion_job_lease,
            max_attempts=settings.promotion_max_attempts,
            poll_interval=settings.promotion_poll_interval,
        )

    async def run_once(self) -> bool:
        """Handle at most one job. Returns False when nothing was claimable."""
        async with self.uow_factory() as uow:
            job = await uow.promotion_jobs.claim(now=utc_now(), lease_seconds=self.lease_seconds)
        if job is None:
            return False

        set_request_id(f"promotion-job-{job.id}")
        try:
            promoted = await self._handle(job)
        except Exception as exc:
            await self._fail(job, exc)
            return True
        finally:
            set_request_id(None)

        async with self.uow_factory() as uow:
            await uow.promotion_jobs.complete(job.id)
        if promoted is not None:
            self._audit(job, promoted)
        return True

    async def _handle(self, job: PromotionJob) -> SignUp | None:
        if job.kind == JobKind.NOTIFY_PROMOTION:
            if job.user_id is None:
                raise ValueError(f"notification job {job.id} has no recipient")
            await deliver_promotion_notice(self.notifier, user_id=job.user_id, event_id=job.event_id)
            return None
        return await handle_promotion_job(
            self.uow_factory,
            self.users,
            self.orders,
            event_id=job.event_id,
            retry=self.retry,
        )

    async def run_forever(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                handled = await self.run_once()
            except Exception:
                logger.exception("promotion worker iteration failed")
                handled = False
            if handled:
                continue
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def _fail(self, job: PromotionJob, exc: Exception) -> None:
        error = f"{type(exc).__name__}: {exc}"
        if job.attempts >= self.max_attempts:
            logger.error(
                "%s job %s for event %s failed permanently after %s attempts: %s",
                job.kind,
                job.id,
                job.event_id,
                job.attempts,
                error,
            )
            retry_at = None
        else:
            delay = min(MAX_RETRY_DELAY, self.poll_interval * (2**job.attempts))
            retry_at = utc_now() + timedelta(seconds=delay)
            logger.warning(
                "%s job %s for event %s failed, retrying in %.1fs: %s", job.kind, job.id, job.event_id, delay, error
            )
        async with self.uow_factory() as uow:
            await uow.promotion_jobs.fail(job.id, error=error, retry_at=retry_at)

    def _audit(self, job: PromotionJob, promoted: SignUp) -> None:
        try:
            emit_audit_log(
                action="sign_up.promoted",
                initiator="system",
                sign_up_id=promoted.id,
                event_id=promoted.event_id,
                slot_id=promoted.slot_id,
                user_id=promoted.user_id,
                actor_id=None,
                status_from=ParticipationStatus.ON_WAITLIST,
                status_to=promoted.participation_status,
                version=promoted.version,
                extra={"promotion_job_id": job.id},
            )
        except RuntimeError:
            logger.exception("failed to write audit log for promoted sign-up %s", promoted.id)


async def _run(settings: Settings) -> None:
    worker = PromotionWorker.from_settings(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    logger.info("promotion worker started")
    await worker.run_forever(stop)
    logger.info("promotion worker stopped")


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    asyncio.run(_run(settings))


if __name__ == "__main__":
    main()
