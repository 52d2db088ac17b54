"""
Tests for resolution/ - matching and find-or-create.
"""

import pytest
import threading
from dataclasses import replace

from trustid.database import get_session_factory, init_database
from trustid.domain import ActorKind, AuditAction, Evidence, EvidenceField, TrustTier
from trustid.errors import ConflictError, ValidationError
from trustid.logger import StructuredLogger
from trustid.resolution import Resolver, select_match
from trustid.resolution.matching import confidence, matched_fields
from trustid.store import IdentityStore


class ConflictOnceStore(IdentityStore):
    """Store whose first create loses a race to another writer."""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.pending_conflicts = 1

    def create(self, populate):
        if self.pending_conflicts:
            self.pending_conflicts -= 1
            raise ConflictError("Write conflicts with an existing record")
        return super().create(populate)


def resolve_concurrently(resolver, workers, evidence_for):
    """Resolve from ``workers`` threads at once; return (results, errors)."""
    barrier = threading.Barrier(workers)
    results, errors = [], []

    def worker(n):
        barrier.wait()
        try:
            results.append(resolver.resolve(evidence_for(n), actor_ref=f"agent-{n}"))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results, errors


class TestMatching:
    """Test pure match selection."""

    def test_confidence_is_strongest_field(self):
        """Confidence is the weight of the strongest matched field."""
        assert confidence([EvidenceField.DEVICE_FINGERPRINT]) == 0.70
        assert confidence([EvidenceField.FACE_EMBEDDING_ID, EvidenceField.DEVICE_FINGERPRINT]) == 0.85
        assert confidence([]) == 0.0

    def test_priority_beats_age(self, make_identity):
        """A document match beats an older device match."""
        by_device = replace(make_identity(identity_id="CID-20260101-AAAAAA"), evidence=Evidence(device_fingerprint="dev-1"))
        by_document = make_identity(identity_id="CID-20260101-BBBBBB")

        match = select_match([by_device, by_document], Evidence(document_hash="abc123", device_fingerprint="dev-1"))

        assert match.identity.id == "CID-20260101-BBBBBB"
        assert match.matched_on == [EvidenceField.DOCUMENT_HASH]

    def test_oldest_wins_ties(self, make_identity):
        """Between equal matches the oldest identity wins."""
        older = make_identity(identity_id="CID-20260101-AAAAAA")
        newer = make_identity(identity_id="CID-20260101-BBBBBB")

        assert select_match([older, newer], Evidence(document_hash="abc123")).identity.id == older.id

    def test_no_match(self, make_identity):
        """Unrelated evidence selects nothing."""
        assert select_match([make_identity()], Evidence(document_hash="other")) is None

    def test_matched_fields_in_priority_order(self, make_identity):
        """Matched fields are listed strongest first."""
        candidate = replace(make_identity(), evidence=Evidence(document_hash="d", device_fingerprint="v"))
        fields = matched_fields(candidate, Evidence(device_fingerprint="v", document_hash="d"))
        assert fields == [EvidenceField.DOCUMENT_HASH, EvidenceField.DEVICE_FINGERPRINT]


class TestResolve:
    """Test find-or-create through the store."""

    def test_new_identity(self, resolver):
        """Unseen evidence creates a pending identity at the prior score."""
        result = resolver.resolve(Evidence(document_hash="abc123"), actor_ref="actor-1")

        assert result.is_new is True
        assert result.identity.risk_score == 50
        assert result.identity.trust_tier == TrustTier.UNKNOWN
        assert result.matched_on == []
        assert result.confidence == 0.0
        assert result.identity.linked_actors == frozenset({"actor-1"})

    def test_same_document_links_second_actor(self, resolver):
        """A second actor with the same document is linked to it."""
        first = resolver.resolve(Evidence(document_hash="abc123"), actor_ref="actor-1")
        second = resolver.resolve(Evidence(document_hash="abc123"), actor_ref="agent-2")

        assert second.identity.id == first.identity.id
        assert second.is_new is False
        assert second.matched_on == [EvidenceField.DOCUMENT_HASH]
        assert second.confidence == 0.90
        assert len(second.identity.linked_actors) == 2

    def test_linking_is_idempotent(self, resolver, audit_log):
        """Linking a known actor again changes nothing."""
        resolver.resolve(Evidence(document_hash="abc123"), actor_ref="actor-1")
        resolver.resolve(Evidence(document_hash="abc123"), actor_ref="agent-2")
        again = resolver.resolve(Evidence(document_hash="abc123"), actor_ref="agent-2")

        assert len(again.identity.linked_actors) == 2
        assert len(list(audit_log.history(again.identity.id))) == 2

    def test_deterministic(self, resolver):
        """The same evidence always resolves to the same identity."""
        ids = {resolver.resolve(Evidence(device_fingerprint="dev-1")).identity.id for _ in range(3)}
        assert len(ids) == 1

    def test_whitespace_is_normalized(self, resolver):
        """Padded fingerprints match their trimmed form."""
        first = resolver.resolve(Evidence(document_hash="abc123"))
        second = resolver.resolve(Evidence(document_hash="  abc123 "))
        assert second.identity.id == first.identity.id

    def test_document_hash_has_priority(self, resolver):
        """The document match wins and the device is observed on it."""
        by_device = resolver.resolve(Evidence(device_fingerprint="dev-1")).identity
        by_document = resolver.resolve(Evidence(document_hash="doc-1")).identity

        result = resolver.resolve(Evidence(document_hash="doc-1", device_fingerprint="dev-1"))

        assert result.identity.id == by_document.id != by_device.id
        assert result.matched_on == [EvidenceField.DOCUMENT_HASH]
        assert result.identity.observed_devices == frozenset({"dev-1"})

    def test_device_only_match(self, resolver):
        """A device-only match has confidence 0.70."""
        resolver.resolve(Evidence(document_hash="doc-1", device_fingerprint="dev-1"))
        result = resolver.resolve(Evidence(device_fingerprint="dev-1"))

        assert result.matched_on == [EvidenceField.DEVICE_FINGERPRINT]
        assert result.confidence == 0.70

    def test_all_matching_fields_reported(self, resolver):
        """Every matching field is reported."""
        resolver.resolve(Evidence(document_hash="doc-1", device_fingerprint="dev-1"))
        result = resolver.resolve(Evidence(document_hash="doc-1", device_fingerprint="dev-1"))

        assert result.matched_on == [EvidenceField.DOCUMENT_HASH, EvidenceField.DEVICE_FINGERPRINT]
        assert result.confidence == 0.90

    def test_new_device_is_observed(self, resolver, audit_log):
        """A new device on a known identity is recorded and audited."""
        identity = resolver.resolve(Evidence(document_hash="doc-1", device_fingerprint="dev-1")).identity
        result = resolver.resolve(Evidence(document_hash="doc-1", device_fingerprint="dev-2"))

        assert result.identity.observed_devices == frozenset({"dev-1", "dev-2"})
        assert result.identity.evidence.device_fingerprint == "dev-1"
        event = list(audit_log.history(identity.id))[-1]
        assert event.action == AuditAction.UPDATED
        assert event.new_value == {"observedDeviceCount": 2}

    def test_default_actor_is_the_linked_agent(self, resolver, audit_log):
        """Without performed_by the linked actor is the agent."""
        identity = resolver.resolve(Evidence(document_hash="abc123"), actor_ref="actor-1").identity
        event = list(audit_log.history(identity.id))[0]

        assert event.action == AuditAction.CREATED
        assert event.actor.kind == ActorKind.AGENT
        assert event.actor.id == "actor-1"

    @pytest.mark.parametrize("evidence", [Evidence(), Evidence(document_hash="  ", face_embedding_id="")])
    def test_insufficient_evidence(self, resolver, evidence):
        """Evidence without a usable fingerprint is rejected."""
        with pytest.raises(ValidationError) as exc_info:
            resolver.resolve(evidence)
        assert exc_info.value.code == "insufficient_evidence"

    def test_invalid_evidence(self, resolver):
        """Overlong fingerprints are invalid_evidence."""
        with pytest.raises(ValidationError) as exc_info:
            resolver.resolve(Evidence(document_hash="x" * 300))
        assert exc_info.value.code == "invalid_evidence"

    def test_invalid_actor_ref(self, resolver):
        """A non-string actor reference is invalid_actor."""
        with pytest.raises(ValidationError) as exc_info:
            resolver.resolve(Evidence(document_hash="abc123"), actor_ref=42)
        assert exc_info.value.code == "invalid_actor"

    def test_identities_for_actor(self, resolver):
        """An actor may be linked to several identities."""
        a = resolver.resolve(Evidence(document_hash="doc-a"), actor_ref="actor-1").identity
        b = resolver.resolve(Evidence(document_hash="doc-b"), actor_ref="actor-1").identity

        assert {i.id for i in resolver.identities_for_actor("actor-1")} == {a.id, b.id}

    def test_metrics(self, resolver, quiet_logger):
        """Creations and matches are counted separately."""
        resolver.resolve(Evidence(document_hash="abc123"))
        resolver.resolve(Evidence(document_hash="abc123"))

        metrics = quiet_logger.get_metrics()
        assert metrics["identities_created"] == 1
        assert metrics["identities_matched"] == 1


class TestConcurrentResolve:
    """Test that racing resolves never split an identity."""

    def test_single_identity_created(self, resolver, store, quiet_logger):
        """Eight racing resolves of one document end on one identity."""
        workers = 8
        results, errors = resolve_concurrently(resolver, workers, lambda n: Evidence(document_hash="abc123"))

        assert errors == []
        assert len({r.identity.id for r in results}) == 1
        assert sum(r.is_new for r in results) == 1
        assert store.stats(70)["total"] == 1
        assert len(store.get(results[0].identity.id).linked_actors) == workers

    def test_in_memory_database(self):
        """Racing resolves on an in-memory database neither fail nor split."""
        engine = init_database("sqlite://")
        try:
            store = IdentityStore(get_session_factory(engine))
            results, errors = resolve_concurrently(
                Resolver(store), 8, lambda n: Evidence(document_hash=f"doc-{n % 2}")
            )

            assert errors == []
            assert len({r.identity.id for r in results}) == 2
            assert sum(r.is_new for r in results) == 2
            assert store.stats(70)["total"] == 2
            for identity_id in {r.identity.id for r in results}:
                assert len(store.get(identity_id).linked_actors) == 4
        finally:
            engine.dispose()


class TestConflictRetry:
    """Test the single retry after losing a creation race."""

    def test_retry_recorded_on_own_logger(self, session_factory, quiet_logger):
        """Conflict retries are counted on the resolver's logger, not the global one."""
        own = StructuredLogger(name="trustid.resolver-test", enable_console=False, enable_file=False)
        resolver = Resolver(ConflictOnceStore(session_factory), logger=own)

        result = resolver.resolve(Evidence(document_hash="abc123"))

        assert result.is_new is True
        assert own.get_metrics()["conflicts_retried"] == 1
        assert quiet_logger.get_metrics()["conflicts_retried"] == 0


class TestBiometricMatcher:
    """Test the pluggable similarity matcher."""

    def test_similar_face_matches(self, store):
        """A proposal above the threshold matches, capped at 0.85."""
        known = Resolver(store).resolve(Evidence(face_embedding_id="face-1")).identity
        resolver = Resolver(store, biometric_matcher=lambda ref: [(known.id, 0.95)])

        result = resolver.resolve(Evidence(face_embedding_id="face-2"))

        assert result.identity.id == known.id
        assert result.matched_on == [EvidenceField.FACE_EMBEDDING_ID]
        assert result.confidence == 0.85

    def test_below_threshold_creates(self, store):
        """A weak proposal leads to a new identity."""
        known = Resolver(store).resolve(Evidence(face_embedding_id="face-1")).identity
        resolver = Resolver(store, biometric_matcher=lambda ref: [(known.id, 0.5)])

        result = resolver.resolve(Evidence(face_embedding_id="face-2"))

        assert result.is_new is True
        assert result.identity.id != known.id

    def test_exact_match_wins_over_matcher(self, store):
        """The matcher is not asked when an exact match exists."""
        calls = []
        known = Resolver(store).resolve(Evidence(face_embedding_id="face-1")).identity
        resolver = Resolver(store, biometric_matcher=lambda ref: calls.append(ref) or [])

        assert resolver.resolve(Evidence(face_embedding_id="face-1")).identity.id == known.id
        assert calls == []

    def test_unknown_proposals_ignored(self, store):
        """Proposals for unknown identities are skipped."""
        resolver = Resolver(store, biometric_matcher=lambda ref: [("CID-20260101-ZZZZZZ", 0.99)])
        assert resolver.resolve(Evidence(face_embedding_id="face-2")).is_new is True
