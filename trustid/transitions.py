"""
State transitions for canonical identities.

Responsibilities:
- Apply one mutation (creation, linking, status change, score change) to an
  identity record.
- Update derived counters as a side effect of that mutation.
- Describe the mutation as exactly one pending audit event.

Non-Responsibilities:
- No session handling or commits.
- No scoring.

Invariant:
Counters are written only here, and every applied change yields one event
whose new value is the post-state of the changed field.
"""

from datetime import datetime
from typing import Optional

from .audit import PendingEvent
from .database import DeviceObservationRecord, IdentityRecord, LinkedActorRecord
from .domain import (
    ActorRef,
    AuditAction,
    Evidence,
    ScoreSource,
    TrustTier,
    VerificationStatus,
)

PRIOR_RISK_SCORE = 50


def status_action(previous: VerificationStatus, new: VerificationStatus) -> AuditAction:
    """Audit action recorded for a status change."""
    if new == VerificationStatus.VERIFIED:
        return AuditAction.VERIFIED
    if new == VerificationStatus.FLAGGED:
        return AuditAction.FLAGGED
    if previous == VerificationStatus.FLAGGED:
        return AuditAction.CLEARED
    return AuditAction.UPDATED


def apply_creation(
    record: IdentityRecord,
    evidence: Evidence,
    actor_ref: Optional[str],
    actor: ActorRef,
    now: datetime,
) -> PendingEvent:
    record.verification_status = VerificationStatus.PENDING.value
    record.risk_score = PRIOR_RISK_SCORE
    record.trust_tier = TrustTier.UNKNOWN.value
    record.score_source = ScoreSource.PRIOR.value
    record.document_hash = evidence.document_hash
    record.device_fingerprint = evidence.device_fingerprint
    record.face_embedding_id = evidence.face_embedding_id
    record.total_verifications = 0
    record.flag_count = 0
    record.created_at = now
    record.updated_at = now
    if actor_ref:
        record.linked_actors.append(LinkedActorRecord(actor_ref=actor_ref, linked_at=now))
    if evidence.device_fingerprint:
        record.devices.append(
            DeviceObservationRecord(device_fingerprint=evidence.device_fingerprint, first_seen_at=now)
        )

    return PendingEvent(
        action=AuditAction.CREATED,
        actor=actor,
        detail="New identity created",
        new_value={k.value: v for k, v in evidence.fingerprints().items()},
    )


def apply_link(
    record: IdentityRecord,
    actor_ref: Optional[str],
    device_fingerprint: Optional[str],
    actor: ActorRef,
    now: datetime,
) -> Optional[PendingEvent]:
    """
    Link an actor reference and record an observed device, if either is new.

    Returns:
        The pending event, or None when nothing changed
    """
    previous, new, notes = {}, {}, []

    linked = record.actor_refs()
    if actor_ref and actor_ref not in linked:
        previous["linkedActors"] = sorted(linked)
        record.linked_actors.append(LinkedActorRecord(actor_ref=actor_ref, linked_at=now))
        new["linkedActors"] = sorted(linked | {actor_ref})
        notes.append(f"Linked to actor: {actor_ref}")

    devices = record.device_set()
    if device_fingerprint and device_fingerprint not in devices:
        previous["observedDeviceCount"] = len(devices)
        record.devices.append(
            DeviceObservationRecord(device_fingerprint=device_fingerprint, first_seen_at=now)
        )
        new["observedDeviceCount"] = len(devices) + 1
        notes.append("Observed new device")

    if not new:
        return None

    record.updated_at = now
    return PendingEvent(
        action=AuditAction.UPDATED,
        actor=actor,
        detail="; ".join(notes),
        previous_value=previous,
        new_value=new,
    )


def apply_status(
    record: IdentityRecord,
    new_status: VerificationStatus,
    actor: ActorRef,
    now: datetime,
) -> PendingEvent:
    """
    Move an identity to ``new_status``.

    Any status may follow any other. Counters move only on an actual change:
    entering ``verified`` bumps total verifications, entering ``flagged``
    bumps the flag count.
    """
    previous = VerificationStatus(record.verification_status)
    if new_status != previous:
        if new_status == VerificationStatus.VERIFIED:
            record.total_verifications = (record.total_verifications or 0) + 1
            record.last_verification_at = now
        elif new_status == VerificationStatus.FLAGGED:
            record.flag_count = (record.flag_count or 0) + 1

    record.verification_status = new_status.value
    record.updated_at = now
    return PendingEvent(
        action=status_action(previous, new_status),
        actor=actor,
        detail=f"Verification status changed from {previous.value} to {new_status.value}",
        previous_value=previous.value,
        new_value=new_status.value,
    )


def apply_risk(
    record: IdentityRecord,
    score: int,
    tier: TrustTier,
    source: ScoreSource,
    actor: ActorRef,
    now: datetime,
) -> PendingEvent:
    previous = record.risk_score
    record.risk_score = score
    record.trust_tier = tier.value
    record.score_source = source.value
    record.last_risk_assessment_at = now
    record.updated_at = now

    verb = "overridden" if source == ScoreSource.OVERRIDE else "updated"
    return PendingEvent(
        action=AuditAction.RISK_ASSESSED,
        actor=actor,
        detail=f"Risk score {verb} from {previous} to {score} (trust tier {tier.value})",
        previous_value=previous,
        new_value=score,
    )
