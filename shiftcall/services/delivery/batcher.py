from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import logging
import re
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from shiftcall.core.clock import TimeProvider, ensure_utc, utc_now
from shiftcall.core.errors import RecipientAlreadyConfirmed
from shiftcall.domain.contacts import ContactProfile, JobProfile, SkillRequirement
from shiftcall.domain.states import AvailabilityStatus, Channel, ContactStatus, EventType
from shiftcall.services.event_log import record_message_event


logger = logging.getLogger(__name__)

_STATUS_POINTS = {
    ContactStatus.FREE: 40,
    ContactStatus.OFF_SHIFT: 15,
    ContactStatus.ON_JOB: 5,
}
_SKILL_POINTS = 35
# (max age in days, points); contacts who never replied sit between stale and old.
_RECENCY_POINTS = ((7, 25), (30, 15), (90, 8))
_RECENCY_STALE_POINTS = 3
_RECENCY_NEVER_POINTS = 5
_BLACKOUT_PENALTY = 30
_MIN_SCORE = 1
_MAX_SCORE = 100

_BLACKOUT_DATE = re.compile(r"[^0-9/]")


@dataclass(frozen=True)
class PriorityScore:
    score: int
    reason: str


@dataclass(frozen=True)
class PrioritizedContact:
    contact: ContactProfile
    score: int
    reason: str


@dataclass(frozen=True)
class BatchMember:
    contact: ContactProfile
    priority: int
    priority_reason: str
    batch_position: int


@dataclass(frozen=True)
class Batch:
    campaign_id: str
    batch_id: str
    index: int
    members: tuple[BatchMember, ...]


def _normalize(values: Iterable[str | None]) -> set[str]:
    return {value.strip().lower() for value in values if value and value.strip()}


def parse_blackout_range(value: str) -> tuple[datetime, datetime] | None:
    # dd/mm/yyyy-dd/mm/yyyy, inclusive of the whole end day.
    parts = [part.strip() for part in value.split("-")]
    if len(parts) != 2 or not all(parts):
        return None

    def _parse(text: str) -> datetime | None:
        pieces = _BLACKOUT_DATE.sub("", text).split("/")
        if len(pieces) != 3:
            return None
        try:
            day, month, year = (int(piece) for piece in pieces)
            return datetime(year, month, day, tzinfo=timezone.utc)
        except ValueError:
            return None

    start = _parse(parts[0])
    end = _parse(parts[1])
    if start is None or end is None:
        return None
    return start, end + timedelta(days=1) - timedelta(microseconds=1)


def within_blackout(contact: ContactProfile, job: JobProfile) -> bool:
    job_start = ensure_utc(job.start_time)
    job_end = ensure_utc(job.end_time)
    for period in contact.blackout_periods:
        parsed = parse_blackout_range(period)
        if parsed is None:
            continue
        start, end = parsed
        if job_start <= end and start <= job_end:
            return True
    return False


def _required_skills(job: JobProfile) -> set[str]:
    return _normalize(
        [*job.required_skills, *job.required_qualifications, *(req.skill for req in job.skill_requirements)]
    )


def _recency_points(last_response_at: datetime | None, now: datetime) -> int:
    if last_response_at is None:
        return _RECENCY_NEVER_POINTS
    age_days = (now - ensure_utc(last_response_at)).total_seconds() / 86400
    for max_days, points in _RECENCY_POINTS:
        if age_days <= max_days:
            return points
    return _RECENCY_STALE_POINTS


def score_contact(contact: ContactProfile, job: JobProfile, now: datetime) -> PriorityScore:
    status = ContactStatus(contact.status)
    status_points = _STATUS_POINTS[status]

    required = _required_skills(job)
    if required:
        held = _normalize([*contact.skills, *contact.qualifications])
        skill_points = round(_SKILL_POINTS * len(required & held) / len(required))
        skill_reason = "skills_match"
    else:
        skill_points = _SKILL_POINTS
        skill_reason = "open_requirements"

    recency_points = _recency_points(contact.last_response_at, ensure_utc(now))

    total = status_points + skill_points + recency_points
    blackout = within_blackout(contact, job)
    if blackout:
        total -= _BLACKOUT_PENALTY
    score = max(_MIN_SCORE, min(_MAX_SCORE, total))

    if blackout:
        return PriorityScore(score=score, reason="blackout_period")
    # Ties keep the first factor listed: status, then skills, then recency.
    components = [
        (status_points, f"status_{status.value}"),
        (skill_points, skill_reason),
        (recency_points, "recent_response"),
    ]
    reason = max(components, key=lambda item: item[0])[1]
    return PriorityScore(score=score, reason=reason)


def order_by_skill_quotas(
    prioritized: list[PrioritizedContact],
    requirements: list[SkillRequirement],
) -> list[PrioritizedContact]:
    # Fill each skill's headcount from the top of the ranking, in requirement order; the rest keep score order.
    quotas: dict[str, int] = {}
    for requirement in requirements:
        key = requirement.skill.strip().lower()
        if not key:
            continue
        quotas[key] = quotas.get(key, 0) + requirement.headcount
    if not quotas or not prioritized:
        return prioritized

    selected: list[PrioritizedContact] = []
    used: set[str] = set()
    for key, remaining in quotas.items():
        for entry in prioritized:
            if remaining <= 0:
                break
            if entry.contact.id in used:
                continue
            if key in _normalize(entry.contact.skills):
                selected.append(entry)
                used.add(entry.contact.id)
                remaining -= 1
    return selected + [entry for entry in prioritized if entry.contact.id not in used]


def batch_id_for(campaign_id: str, index: int) -> str:
    # Stable across retries so re-slicing a campaign reproduces the same batch ids.
    digest = hashlib.sha256(f"{campaign_id}:{index}".encode("utf-8")).hexdigest()[:16]
    return f"batch_{digest}"


def primary_channel(contact: ContactProfile) -> Channel:
    if contact.device_token:
        return Channel.PUSH
    if contact.phone:
        return Channel.SMS
    return Channel.PORTAL


class PriorityBatcher:
    def __init__(self, *, time_provider: TimeProvider | None = None) -> None:
        self._time_provider = time_provider or utc_now

    def rank(
        self,
        *,
        campaign_id: str,
        candidates: list[ContactProfile],
        job: JobProfile,
    ) -> list[PrioritizedContact]:
        confirmed = sorted(
            {c.id for c in candidates if AvailabilityStatus(c.availability_status) == AvailabilityStatus.CONFIRMED}
        )
        if confirmed:
            raise RecipientAlreadyConfirmed(
                f"{len(confirmed)} contact(s) already confirmed for job {job.id}",
                contact_id=confirmed[0],
                contact_ids=confirmed,
            )

        now = self._time_provider()
        seen: set[str] = set()
        ranked: list[PrioritizedContact] = []
        for contact in candidates:
            if contact.id in seen:
                continue
            seen.add(contact.id)
            if contact.is_opted_out:
                logger.info(
                    "contact_skipped_opted_out campaign_id=%s contact_id=%s job_id=%s",
                    campaign_id,
                    contact.id,
                    job.id,
                )
                continue
            scored = score_contact(contact, job, now)
            ranked.append(PrioritizedContact(contact=contact, score=scored.score, reason=scored.reason))

        ranked.sort(key=lambda entry: (-entry.score, entry.contact.id))
        return order_by_skill_quotas(ranked, job.skill_requirements)

    def slice(
        self,
        prioritized: list[PrioritizedContact],
        *,
        campaign_id: str,
        batch_size: int,
    ) -> list[Batch]:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        batches: list[Batch] = []
        for index, start in enumerate(range(0, len(prioritized), batch_size)):
            chunk = prioritized[start : start + batch_size]
            members = tuple(
                BatchMember(
                    contact=entry.contact,
                    priority=entry.score,
                    priority_reason=entry.reason,
                    batch_position=position,
                )
                for position, entry in enumerate(chunk)
            )
            batches.append(
                Batch(
                    campaign_id=campaign_id,
                    batch_id=batch_id_for(campaign_id, index),
                    index=index,
                    members=members,
                )
            )
        return batches

    async def record_batches(
        self,
        *,
        session: AsyncSession,
        organization_id: str,
        campaign_id: str,
        job: JobProfile,
        batches: list[Batch],
        commit: bool = True,
    ) -> None:
        # One contact_prioritized and one batch_created row per admitted contact.
        now = self._time_provider()
        for batch in batches:
            for member in batch.members:
                channel = primary_channel(member.contact)
                await record_message_event(
                    session=session,
                    organization_id=organization_id,
                    contact_id=member.contact.id,
                    job_id=job.id,
                    campaign_id=campaign_id,
                    event_type=EventType.CONTACT_PRIORITIZED,
                    channel=channel,
                    status="prioritized",
                    priority=member.priority,
                    priority_reason=member.priority_reason,
                    occurred_at=now,
                )
                await record_message_event(
                    session=session,
                    organization_id=organization_id,
                    contact_id=member.contact.id,
                    job_id=job.id,
                    campaign_id=campaign_id,
                    event_type=EventType.BATCH_CREATED,
                    channel=channel,
                    status="batched",
                    priority=member.priority,
                    priority_reason=member.priority_reason,
                    batch_id=batch.batch_id,
                    batch_position=member.batch_position,
                    metadata={"batch_index": batch.index, "batch_size": len(batch.members)},
                    occurred_at=now,
                )
        if commit:
            await session.commit()
        logger.info(
            "campaign_batched campaign_id=%s job_id=%s batches=%s contacts=%s",
            campaign_id,
            job.id,
            len(batches),
            sum(len(batch.members) for batch in batches),
        )
