from __future__ import annotations

from datetime import datetime, timedelta
import logging
import secrets
from typing import Any
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shiftcall.core.clock import TimeProvider, ensure_utc, utc_now
from shiftcall.core.config import Settings, get_settings
from shiftcall.core.errors import (
    CampaignCancelledError,
    CampaignNotFoundError,
    ChannelError,
    ChannelTimeoutError,
    CreditTransactionNotFoundError,
    InsufficientCreditsError,
    NoContactableChannel,
    RecipientAlreadyConfirmed,
    RecipientOptedOut,
)
from shiftcall.domain.contacts import ContactProfile, JobProfile
from shiftcall.domain.models import Delivery, DeliveryCampaign
from shiftcall.domain.states import (
    ESCALATABLE,
    AvailabilityStatus,
    CampaignStatus,
    Channel,
    DeliveryStatus,
    EventType,
    ReceiptStatus,
    transition,
)
from shiftcall.providers.channels.base import ChannelSet, PushPayload
from shiftcall.services.credits.ledger import CreditLedger
from shiftcall.services.delivery.phone import to_e164
from shiftcall.services.delivery.templates import resolve_message_body
from shiftcall.services.event_log import record_message_event
from shiftcall.services.resilience import call_with_timeout


logger = logging.getLogger(__name__)

SMS_FALLBACK_REASON = "sms_fallback"
SMS_REFUND_REASON = "sms_send_failed"

# Short machine reasons stored on deliveries and events; provider detail stays in logs.
REASON_PUSH_REJECTED = "PushRejected"
REASON_PUSH_TIMEOUT = "PushTimeout"
REASON_PUSH_ERROR = "PushError"
REASON_NO_DEVICE_TOKEN = "NoDeviceToken"
REASON_PUSH_RECEIPT_FAILED = "PushReceiptFailed"
REASON_NO_PHONE = "NoPhoneNumber"
REASON_MAX_ATTEMPTS = "MaxAttemptsExceeded"
REASON_CAMPAIGN_ABORTED = "CampaignAborted"
REASON_INSUFFICIENT_CREDITS = "InsufficientCredits"
REASON_SMS_SEND_FAILED = "SmsSendFailed"
REASON_SMS_RECEIPT_FAILED = "SmsReceiptFailed"
REASON_PORTAL_FAILED = "PortalUnavailable"
REASON_LATE_RECEIPT = "ReceiptAfterEscalation"
REASON_ESCALATION_ERROR = "EscalationError"


def new_notification_id(now: datetime) -> str:
    return f"notif_{int(now.timestamp() * 1000)}_{secrets.token_hex(8)}"


class DeliveryOrchestrator:
    """Per-recipient delivery state machine: push first, SMS on missing confirmation, portal for app-only users.

    Every status write and its event row share one commit. Escalation to SMS is
    guarded by a compare-and-set on ``fallback_processed`` so concurrent sweeps
    and inline escalations never double send or double charge.
    """

    def __init__(
        self,
        *,
        channels: ChannelSet,
        ledger: CreditLedger | None = None,
        settings: Settings | None = None,
        time_provider: TimeProvider | None = None,
    ) -> None:
        self._channels = channels
        self._time_provider = time_provider or utc_now
        self._ledger = ledger or CreditLedger(time_provider=self._time_provider)
        self._settings = settings or get_settings()

    def _now(self) -> datetime:
        return ensure_utc(self._time_provider())

    @property
    def fallback_window(self) -> timedelta:
        return timedelta(seconds=max(0, int(self._settings.fallback_window_seconds)))

    async def _log(
        self,
        session: AsyncSession,
        delivery: Delivery,
        event_type: EventType,
        *,
        status: str | None = None,
        channel: Channel | str | None = None,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> None:
        await record_message_event(
            session=session,
            organization_id=delivery.organization_id,
            contact_id=delivery.contact_id,
            job_id=delivery.job_id,
            campaign_id=delivery.campaign_id,
            delivery_id=delivery.id,
            event_type=event_type,
            channel=channel or delivery.channel,
            status=status or delivery.status,
            priority=delivery.priority,
            priority_reason=delivery.priority_reason,
            batch_id=delivery.batch_id,
            batch_position=delivery.batch_position,
            delivery_attempt=delivery.delivery_attempt,
            notification_id=delivery.notification_id,
            twilio_sid=delivery.sms_sid,
            cost_credits=delivery.cost_credits,
            reason=reason,
            metadata=metadata,
            occurred_at=now or self._now(),
        )

    async def _reload(self, session: AsyncSession, delivery_id: str) -> Delivery:
        result = await session.execute(
            select(Delivery).where(Delivery.id == delivery_id).execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def _existing_delivery(
        self, session: AsyncSession, *, campaign_id: str, contact_id: str
    ) -> Delivery | None:
        result = await session.execute(
            select(Delivery)
            .where(Delivery.campaign_id == campaign_id, Delivery.contact_id == contact_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    def _validate(self, contact: ContactProfile, job: JobProfile) -> str | None:
        if contact.is_opted_out:
            # Opt-outs are not message events; keep them out of the delivery log entirely.
            logger.info("send_skipped_opted_out contact_id=%s job_id=%s", contact.id, job.id)
            raise RecipientOptedOut(f"Contact {contact.id} has opted out", contact_id=contact.id)
        if AvailabilityStatus(contact.availability_status) == AvailabilityStatus.CONFIRMED:
            raise RecipientAlreadyConfirmed(
                f"Contact {contact.id} already confirmed for job {job.id}", contact_id=contact.id
            )
        phone = to_e164(contact.phone, contact.country_code or self._settings.default_country_code)
        if not contact.device_token and not phone and not contact.has_login:
            raise NoContactableChannel(f"Contact {contact.id} has no contactable channel", contact_id=contact.id)
        return phone

    async def send(
        self,
        *,
        session: AsyncSession,
        contact: ContactProfile,
        job: JobProfile,
        campaign_id: str,
        template_id: str | None = None,
        custom_message: str | None = None,
        priority: int | None = None,
        priority_reason: str | None = None,
        batch_id: str | None = None,
        batch_position: int | None = None,
    ) -> Delivery:
        phone = self._validate(contact, job)

        campaign = await session.get(DeliveryCampaign, campaign_id, populate_existing=True)
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        if campaign.status == CampaignStatus.CANCELLED.value:
            raise CampaignCancelledError(f"Campaign {campaign_id} was cancelled", contact_id=contact.id)

        existing = await self._existing_delivery(session, campaign_id=campaign_id, contact_id=contact.id)
        if existing is not None:
            logger.info(
                "send_replayed campaign_id=%s contact_id=%s delivery_id=%s status=%s",
                campaign_id,
                contact.id,
                existing.id,
                existing.status,
            )
            return existing

        body = resolve_message_body(
            contact=contact,
            job=job,
            message_template=campaign.message_template,
            custom_message=custom_message or campaign.custom_message,
        )
        now = self._now()
        portal_only = not contact.device_token and not phone
        delivery = Delivery(
            id=uuid4().hex,
            organization_id=campaign.organization_id,
            campaign_id=campaign_id,
            job_id=job.id,
            contact_id=contact.id,
            channel=(Channel.PORTAL if portal_only else Channel.PUSH).value,
            status=DeliveryStatus.PENDING.value,
            notification_id=new_notification_id(now),
            device_token=contact.device_token,
            phone_number=phone,
            template_id=template_id or campaign.template_id,
            message_body=body,
            priority=priority,
            priority_reason=priority_reason,
            batch_id=batch_id,
            batch_position=batch_position,
            fallback_processed=False,
            delivery_attempt=0,
            cost_credits=0,
            created_at=now,
            updated_at=now,
        )
        session.add(delivery)
        if not portal_only and contact.device_token:
            await self._log(session, delivery, EventType.PUSH_ATTEMPTED, now=now)
        try:
            await session.commit()
        except IntegrityError:
            # A concurrent send for the same recipient won; hand back its delivery.
            await session.rollback()
            existing = await self._existing_delivery(session, campaign_id=campaign_id, contact_id=contact.id)
            if existing is None:
                raise
            return existing

        if portal_only:
            return await self._send_portal(session, delivery)
        return await self._send_push(session, delivery, job=job)

    async def _send_portal(self, session: AsyncSession, delivery: Delivery) -> Delivery:
        portal = self._channels.portal
        try:
            receipt = await call_with_timeout(
                lambda: portal.create_portal_message(delivery.contact_id, delivery.message_body),
                operation="portal.create_message",
                timeout_ms=self._settings.channel_call_timeout_ms,
            )
        except ChannelError as exc:
            now = self._now()
            logger.warning(
                "portal_message_failed delivery_id=%s contact_id=%s", delivery.id, delivery.contact_id, exc_info=exc
            )
            delivery.status = transition(delivery.status, DeliveryStatus.FAILED).value
            delivery.failure_reason = REASON_PORTAL_FAILED
            delivery.failed_at = now
            delivery.updated_at = now
            # No portal failure event type; the failed status marks the outcome.
            await self._log(
                session,
                delivery,
                EventType.PORTAL_MESSAGE_CREATED,
                status=DeliveryStatus.FAILED.value,
                reason=REASON_PORTAL_FAILED,
                now=now,
            )
            await session.commit()
            return delivery

        now = self._now()
        delivery.status = transition(delivery.status, DeliveryStatus.PORTAL_MESSAGE_CREATED).value
        delivery.sent_at = now
        delivery.delivered_at = now
        delivery.delivery_attempt = 1
        delivery.updated_at = now
        await self._log(
            session,
            delivery,
            EventType.PORTAL_MESSAGE_CREATED,
            metadata={"portal_message_id": receipt.message_id},
            now=now,
        )
        await session.commit()
        return delivery

    async def _send_push(self, session: AsyncSession, delivery: Delivery, *, job: JobProfile) -> Delivery:
        accepted = False
        reason = REASON_NO_DEVICE_TOKEN
        provider_message_id = None
        if delivery.device_token:
            push = self._channels.push
            payload = PushPayload(
                notification_id=delivery.notification_id,
                title=self._settings.push_title,
                body=delivery.message_body,
                data={"jobId": job.id, "campaignId": delivery.campaign_id, "deliveryId": delivery.id},
            )
            token = delivery.device_token
            try:
                receipt = await call_with_timeout(
                    lambda: push.send_push(token, payload),
                    operation="push.send",
                    timeout_ms=self._settings.channel_call_timeout_ms,
                )
                accepted = receipt.accepted
                provider_message_id = receipt.provider_message_id
                reason = REASON_PUSH_REJECTED
                if not accepted:
                    logger.info(
                        "push_rejected delivery_id=%s provider_reason=%s", delivery.id, receipt.reason
                    )
            except ChannelTimeoutError:
                reason = REASON_PUSH_TIMEOUT
            except ChannelError as exc:
                logger.warning("push_send_failed delivery_id=%s error=%s", delivery.id, exc.reason)
                reason = REASON_PUSH_ERROR

        now = self._now()
        delivery.delivery_attempt = 1
        delivery.updated_at = now
        if accepted:
            delivery.status = transition(delivery.status, DeliveryStatus.PUSH_SENT).value
            delivery.sent_at = now
            delivery.fallback_due_at = now + self.fallback_window
            await self._log(
                session,
                delivery,
                EventType.PUSH_SENT,
                metadata={"provider_message_id": provider_message_id},
                now=now,
            )
            await self._log(
                session,
                delivery,
                EventType.SMS_FALLBACK_SCHEDULED,
                metadata={"fallback_due_at": delivery.fallback_due_at},
                now=now,
            )
            await session.commit()
            return delivery

        delivery.status = transition(delivery.status, DeliveryStatus.PUSH_FAILED).value
        delivery.failure_reason = reason
        delivery.fallback_due_at = now
        await self._log(session, delivery, EventType.PUSH_FAILED, reason=reason, now=now)
        await session.commit()

        # Failed pushes escalate immediately instead of waiting for the sweep.
        escalated = await self.escalate(session=session, delivery_id=delivery.id)
        if escalated is None:
            return await self._reload(session, delivery.id)
        return escalated

    async def escalate(self, *, session: AsyncSession, delivery_id: str) -> Delivery | None:
        """Promote an unconfirmed push delivery to SMS.

        Returns None when another worker already claimed the delivery.
        """
        now = self._now()
        sms_message_id = f"sms_{uuid4().hex}"
        claim = await session.execute(
            update(Delivery)
            .where(
                Delivery.id == delivery_id,
                Delivery.channel == Channel.PUSH.value,
                Delivery.fallback_processed.is_(False),
                Delivery.status.in_([status.value for status in ESCALATABLE]),
            )
            .values(
                fallback_processed=True,
                status=DeliveryStatus.SMS_FALLBACK_SCHEDULED.value,
                channel=Channel.SMS.value,
                delivery_attempt=Delivery.delivery_attempt + 1,
                sms_message_id=sms_message_id,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if claim.rowcount != 1:
            await session.rollback()
            logger.debug("fallback_claim_lost delivery_id=%s", delivery_id)
            return None

        delivery = await self._reload(session, delivery_id)
        await self._log(session, delivery, EventType.SMS_FALLBACK_TRIGGERED, now=now)
        await session.commit()
        logger.info(
            "sms_fallback_triggered delivery_id=%s campaign_id=%s attempt=%s",
            delivery.id,
            delivery.campaign_id,
            delivery.delivery_attempt,
        )

        try:
            return await self._deliver_escalation(session, delivery, sms_message_id=sms_message_id)
        except Exception:  # noqa: BLE001 - settle the claimed delivery instead of stranding it
            logger.exception("sms_fallback_error delivery_id=%s", delivery_id)
            return await self._settle_broken_escalation(session, delivery_id, sms_message_id=sms_message_id)

    async def _deliver_escalation(
        self, session: AsyncSession, delivery: Delivery, *, sms_message_id: str
    ) -> Delivery:
        if delivery.delivery_attempt > int(self._settings.max_delivery_attempts):
            return await self._fail_escalation(session, delivery, reason=REASON_MAX_ATTEMPTS)

        campaign = await session.get(DeliveryCampaign, delivery.campaign_id, populate_existing=True)
        if (
            campaign is not None
            and campaign.status == CampaignStatus.CANCELLED.value
            and campaign.abort_undelivered
        ):
            return await self._fail_escalation(
                session, delivery, reason=REASON_CAMPAIGN_ABORTED, event_status="skipped"
            )

        if not delivery.phone_number:
            return await self._fail_escalation(session, delivery, reason=REASON_NO_PHONE, event_status="skipped")

        try:
            charge = await self._ledger.consume(
                session=session,
                organization_id=delivery.organization_id,
                message_id=sms_message_id,
                amount=1,
                reason=SMS_FALLBACK_REASON,
                commit=False,
            )
        except InsufficientCreditsError as exc:
            logger.info(
                "sms_fallback_unfunded delivery_id=%s organization_id=%s available=%s",
                delivery.id,
                delivery.organization_id,
                exc.available,
            )
            return await self._fail_escalation(session, delivery, reason=REASON_INSUFFICIENT_CREDITS)

        now = self._now()
        delivery.cost_credits = charge.amount
        delivery.updated_at = now
        await self._log(session, delivery, EventType.SMS_ATTEMPTED, now=now)
        await session.commit()

        sms = self._channels.sms
        phone = delivery.phone_number
        body = delivery.message_body
        try:
            receipt = await call_with_timeout(
                lambda: sms.send_sms(phone, body),
                operation="sms.send",
                timeout_ms=self._settings.channel_call_timeout_ms,
            )
        except ChannelError as exc:
            logger.warning("sms_send_failed delivery_id=%s error=%s", delivery.id, exc.reason)
            await self._ledger.refund(
                session=session,
                message_id=sms_message_id,
                reason=SMS_REFUND_REASON,
                commit=False,
            )
            now = self._now()
            delivery.status = transition(delivery.status, DeliveryStatus.SMS_FAILED).value
            delivery.failure_reason = REASON_SMS_SEND_FAILED
            delivery.failed_at = now
            delivery.cost_credits = 0
            delivery.updated_at = now
            await self._log(
                session,
                delivery,
                EventType.SMS_FAILED,
                reason=REASON_SMS_SEND_FAILED,
                metadata={"refunded": True},
                now=now,
            )
            await session.commit()
            return delivery

        now = self._now()
        delivery.status = transition(delivery.status, DeliveryStatus.SMS_SENT).value
        delivery.sms_sid = receipt.sid
        delivery.sent_at = now
        delivery.updated_at = now
        await self._log(session, delivery, EventType.SMS_SENT, now=now)
        await session.commit()
        return delivery

    async def _settle_broken_escalation(
        self, session: AsyncSession, delivery_id: str, *, sms_message_id: str
    ) -> Delivery:
        # The claim is spent, so no sweep retries this delivery; close it out and return any charge.
        await session.rollback()
        delivery = await self._reload(session, delivery_id)
        if delivery.status != DeliveryStatus.SMS_FALLBACK_SCHEDULED.value:
            return delivery
        refunded = True
        try:
            await self._ledger.refund(
                session=session,
                message_id=sms_message_id,
                reason=SMS_REFUND_REASON,
                commit=False,
            )
        except CreditTransactionNotFoundError:
            refunded = False
        delivery.cost_credits = 0
        return await self._fail_escalation(
            session, delivery, reason=REASON_ESCALATION_ERROR, metadata={"refunded": refunded}
        )

    async def _fail_escalation(
        self,
        session: AsyncSession,
        delivery: Delivery,
        *,
        reason: str,
        event_status: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Delivery:
        now = self._now()
        delivery.status = transition(delivery.status, DeliveryStatus.FAILED).value
        delivery.failure_reason = reason
        delivery.failed_at = now
        delivery.updated_at = now
        await self._log(
            session,
            delivery,
            EventType.SMS_FAILED,
            status=event_status or DeliveryStatus.FAILED.value,
            reason=reason,
            metadata=metadata,
            now=now,
        )
        await session.commit()
        logger.info("sms_fallback_failed delivery_id=%s reason=%s", delivery.id, reason)
        return delivery

    async def confirm_delivery(
        self,
        *,
        session: AsyncSession,
        notification_id: str,
        status: ReceiptStatus | str,
    ) -> Delivery | None:
        receipt_status = ReceiptStatus(getattr(status, "value", status))
        result = await session.execute(
            select(Delivery)
            .where(Delivery.notification_id == notification_id)
            .execution_options(populate_existing=True)
        )
        delivery = result.scalar_one_or_none()
        if delivery is None:
            logger.warning("push_receipt_unknown notification_id=%s", notification_id)
            return None

        now = self._now()
        if receipt_status == ReceiptStatus.DELIVERED:
            target = DeliveryStatus.PUSH_DELIVERED
            values: dict[str, Any] = {
                "status": target.value,
                "delivered_at": now,
                "fallback_processed": True,
                "updated_at": now,
            }
            event_type = EventType.PUSH_DELIVERED
            reason = None
        else:
            target = DeliveryStatus.PUSH_FAILED
            values = {
                "status": target.value,
                "fallback_due_at": now,
                "failure_reason": REASON_PUSH_RECEIPT_FAILED,
                "updated_at": now,
            }
            event_type = EventType.PUSH_FAILED
            reason = REASON_PUSH_RECEIPT_FAILED

        # Same guard as the fallback claim, so a receipt and an escalation can never both win.
        applied = await session.execute(
            update(Delivery)
            .where(
                Delivery.id == delivery.id,
                Delivery.status == DeliveryStatus.PUSH_SENT.value,
                Delivery.fallback_processed.is_(False),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if applied.rowcount != 1:
            await session.rollback()
            delivery = await self._reload(session, delivery.id)
            if delivery.status == target.value:
                logger.debug("push_receipt_duplicate notification_id=%s", notification_id)
                return delivery
            await self._log(
                session,
                delivery,
                event_type,
                status="ignored",
                channel=Channel.PUSH,
                reason=REASON_LATE_RECEIPT,
                metadata={"receipt_status": receipt_status.value, "current_status": delivery.status},
                now=now,
            )
            await session.commit()
            logger.info(
                "push_receipt_ignored notification_id=%s current_status=%s",
                notification_id,
                delivery.status,
            )
            return delivery

        delivery = await self._reload(session, delivery.id)
        await self._log(session, delivery, event_type, reason=reason, now=now)
        await session.commit()
        return delivery

    async def confirm_sms_delivery(
        self,
        *,
        session: AsyncSession,
        sms_sid: str,
        status: ReceiptStatus | str,
    ) -> Delivery | None:
        receipt_status = ReceiptStatus(getattr(status, "value", status))
        result = await session.execute(
            select(Delivery).where(Delivery.sms_sid == sms_sid).execution_options(populate_existing=True)
        )
        delivery = result.scalar_one_or_none()
        if delivery is None:
            logger.warning("sms_receipt_unknown sms_sid=%s", sms_sid)
            return None
        if delivery.status != DeliveryStatus.SMS_SENT.value:
            logger.debug("sms_receipt_duplicate sms_sid=%s status=%s", sms_sid, delivery.status)
            return delivery

        now = self._now()
        if receipt_status == ReceiptStatus.DELIVERED:
            delivery.status = transition(delivery.status, DeliveryStatus.SMS_DELIVERED).value
            delivery.delivered_at = now
            event_type = EventType.SMS_DELIVERED
            reason = None
        else:
            delivery.status = transition(delivery.status, DeliveryStatus.SMS_FAILED).value
            delivery.failed_at = now
            delivery.failure_reason = REASON_SMS_RECEIPT_FAILED
            event_type = EventType.SMS_FAILED
            reason = REASON_SMS_RECEIPT_FAILED
        delivery.updated_at = now
        await self._log(session, delivery, event_type, reason=reason, now=now)
        await session.commit()
        return delivery

    async def record_response(
        self,
        *,
        session: AsyncSession,
        organization_id: str,
        contact_id: str,
        job_id: str,
        response: AvailabilityStatus | str,
        channel: Channel | str = Channel.SMS,
        campaign_id: str | None = None,
    ) -> None:
        resolved = AvailabilityStatus(getattr(response, "value", response))
        delivery_id = None
        if campaign_id is not None:
            delivery = await self._existing_delivery(session, campaign_id=campaign_id, contact_id=contact_id)
            delivery_id = delivery.id if delivery is not None else None
        await record_message_event(
            session=session,
            organization_id=organization_id,
            contact_id=contact_id,
            job_id=job_id,
            campaign_id=campaign_id,
            delivery_id=delivery_id,
            event_type=EventType.RESPONSE_RECEIVED,
            channel=channel,
            status=resolved.value,
            metadata={"response": resolved.value},
            occurred_at=self._now(),
            commit=True,
        )
