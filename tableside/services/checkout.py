"""
Payment / Bill Flow

State machine of the payment modal:

    IDLE -> QR_PENDING -> QR_READY -> BILL_PENDING -> BILL_READY -> DONE
                 |                         |
                 v                         +-> BILL_UNSETTLED (back / retry)
             QR_FAILED (retry)             +-> BILL_FAILED    (back / retry)

Settlement is asynchronous on the provider side: a bill request answered
with "order has not been paid" is an expected BILL_UNSETTLED, not an
error, and nothing re-requests the bill on a timer. The refresh scheduler
is paused for as long as the modal is open.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

from tableside.core.exceptions import OrderingError, PaymentNotSettledError
from tableside.models import Notice, NoticeLevel, Notifier, PaymentSession, PaymentStep
from tableside.schemas import Bill
from tableside.services.api.base import BaseOrderingAPI
from tableside.services.refresh import RefreshScheduler

logger = logging.getLogger(__name__)

TRANSITIONS = {
    PaymentStep.IDLE: {PaymentStep.QR_PENDING},
    PaymentStep.QR_PENDING: {PaymentStep.QR_READY, PaymentStep.QR_FAILED},
    PaymentStep.QR_FAILED: {PaymentStep.QR_PENDING},
    PaymentStep.QR_READY: {PaymentStep.BILL_PENDING},
    PaymentStep.BILL_PENDING: {
        PaymentStep.BILL_READY,
        PaymentStep.BILL_UNSETTLED,
        PaymentStep.BILL_FAILED,
    },
    PaymentStep.BILL_UNSETTLED: {PaymentStep.QR_READY, PaymentStep.BILL_PENDING},
    PaymentStep.BILL_FAILED: {PaymentStep.QR_READY, PaymentStep.BILL_PENDING},
    PaymentStep.BILL_READY: {PaymentStep.DONE},
    PaymentStep.DONE: {PaymentStep.QR_PENDING},
}


class PaymentFlow:
    """
    Drives one payment modal at a time.

    Invalid requests (e.g. confirm_paid() before the QR is ready) are
    logged and leave the step unchanged. Every method returns the step
    after the call.

    Example:
        >>> flow = PaymentFlow(api, scheduler, on_done=session.after_payment)
        >>> await flow.open("tenant-1", order_id)      # QR_READY
        >>> await flow.confirm_paid()                   # BILL_UNSETTLED or BILL_READY
    """

    def __init__(
        self,
        api: BaseOrderingAPI,
        scheduler: Optional[RefreshScheduler] = None,
        bill_display_delay: float = 3.0,
        notifier: Optional[Notifier] = None,
        on_done: Optional[Callable[[], Any]] = None,
    ):
        self.api = api
        self.scheduler = scheduler
        self.bill_display_delay = bill_display_delay
        self.notifier = notifier
        self.on_done = on_done

        self.step = PaymentStep.IDLE
        self.session: Optional[PaymentSession] = None
        self.bill: Optional[Bill] = None
        self.tenant_id: Optional[str] = None
        self.order_id: Optional[str] = None
        self.last_error: Optional[OrderingError] = None
        self.is_open = False

        self._generation = 0
        self._handoff_task: Optional[asyncio.Task] = None

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _transition(self, target: PaymentStep) -> bool:
        if target not in TRANSITIONS[self.step]:
            logger.warning(f"Payment: ignoring {self.step.value} -> {target.value}")
            return False
        logger.debug(f"Payment: {self.step.value} -> {target.value}")
        self.step = target
        return True

    def _notify(self, level: NoticeLevel, title: str, message: str) -> None:
        if self.notifier is not None:
            self.notifier(Notice(level=level, title=title, message=message))

    # =========================================================================
    # QR
    # =========================================================================

    async def open(self, tenant_id: str, order_id: str) -> PaymentStep:
        """Open the modal for an order and generate its payment QR."""
        if not self._transition(PaymentStep.QR_PENDING):
            return self.step

        self.tenant_id = tenant_id
        self.order_id = order_id
        self.session = None
        self.bill = None
        self.last_error = None
        self.is_open = True
        if self.scheduler is not None:
            self.scheduler.pause()

        logger.info(f"Payment: opened for order {order_id}")
        return await self._generate_qr()

    async def retry_qr(self) -> PaymentStep:
        if self.step != PaymentStep.QR_FAILED or not self._transition(PaymentStep.QR_PENDING):
            logger.warning(f"Payment: retry_qr ignored in {self.step.value}")
            return self.step
        return await self._generate_qr()

    async def _generate_qr(self) -> PaymentStep:
        generation = self._generation
        try:
            qr = await self.api.create_payment_qr(self.tenant_id, self.order_id)
        except OrderingError as e:
            if generation != self._generation:
                return self.step
            self.last_error = e
            self._transition(PaymentStep.QR_FAILED)
            self._notify(NoticeLevel.ERROR, "Could not create payment QR", e.message)
            logger.warning(f"Payment: QR generation failed - {e.message}")
            return self.step

        if generation != self._generation:
            return self.step

        self.session = PaymentSession(
            order_id=self.order_id,
            qr_code=qr.qr_code,
            amount=qr.amount,
            currency=qr.currency,
            payment_url=qr.payment_url,
        )
        self._transition(PaymentStep.QR_READY)
        logger.info(f"Payment: QR ready ({qr.amount} {qr.currency})")
        return self.step

    # =========================================================================
    # BILL
    # =========================================================================

    async def confirm_paid(self) -> PaymentStep:
        """The customer says they paid; request the receipt."""
        if self.step != PaymentStep.QR_READY or not self._transition(PaymentStep.BILL_PENDING):
            return self.step
        return await self._fetch_bill()

    async def retry(self) -> PaymentStep:
        """Re-attempt the receipt after BILL_UNSETTLED or BILL_FAILED."""
        if self.step not in (PaymentStep.BILL_UNSETTLED, PaymentStep.BILL_FAILED):
            logger.warning(f"Payment: retry ignored in {self.step.value}")
            return self.step
        self._transition(PaymentStep.BILL_PENDING)
        return await self._fetch_bill()

    def back(self) -> PaymentStep:
        """Return to the QR after BILL_UNSETTLED or BILL_FAILED."""
        if self.step not in (PaymentStep.BILL_UNSETTLED, PaymentStep.BILL_FAILED):
            logger.warning(f"Payment: back ignored in {self.step.value}")
            return self.step
        self._transition(PaymentStep.QR_READY)
        return self.step

    async def _fetch_bill(self) -> PaymentStep:
        generation = self._generation
        try:
            bill = await self.api.generate_bill(self.tenant_id, self.order_id)
        except PaymentNotSettledError as e:
            if generation != self._generation:
                return self.step
            self._transition(PaymentStep.BILL_UNSETTLED)
            self._notify(
                NoticeLevel.INFO,
                "Payment not confirmed yet",
                "Please wait a moment and try again",
            )
            logger.info(f"Payment: order {self.order_id} not settled yet ({e.code})")
            return self.step
        except OrderingError as e:
            if generation != self._generation:
                return self.step
            self.last_error = e
            self._transition(PaymentStep.BILL_FAILED)
            self._notify(NoticeLevel.ERROR, "Could not load bill", e.message)
            logger.warning(f"Payment: bill request failed - {e.message}")
            return self.step

        if generation != self._generation:
            return self.step

        self.bill = bill
        self._transition(PaymentStep.BILL_READY)
        self._notify(NoticeLevel.SUCCESS, "Payment successful", "Thank you for dining with us")
        logger.info(f"Payment: bill {bill.bill_number} ready, total {bill.summary.total}")
        self._handoff_task = asyncio.ensure_future(self._handoff(generation))
        return self.step

    async def _handoff(self, generation: int) -> None:
        await asyncio.sleep(self.bill_display_delay)
        if generation != self._generation:
            return
        self._transition(PaymentStep.DONE)
        self._release()

        if self.on_done is not None:
            result = self.on_done()
            if inspect.isawaitable(result):
                await result

    # =========================================================================
    # CLOSE
    # =========================================================================

    def _release(self) -> None:
        self.is_open = False
        self.session = None
        if self.scheduler is not None:
            self.scheduler.resume()

    def close(self) -> PaymentStep:
        """Dismiss the modal; discards the payment session and resumes refreshes."""
        self._generation += 1
        task, self._handoff_task = self._handoff_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

        was_open = self.is_open
        self.step = PaymentStep.IDLE
        self.bill = None
        self.order_id = None
        self.last_error = None
        if was_open:
            self._release()
        else:
            self.session = None
        return self.step

    async def wait_for_handoff(self) -> None:
        """Wait for a scheduled hand-off (if any) to finish."""
        task = self._handoff_task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
