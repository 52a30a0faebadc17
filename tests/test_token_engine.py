"""Tests for the token lifecycle engine.

Covers:
- Provisioning (format, hashed storage, input validation)
- Validation gates in order (format, revocation, cache, durable, expiry, rate limit)
- Revocation finality and idempotency
- Refresh atomicity
- Store outages surfacing as StoreUnavailableError
- Service session minting
"""

import asyncio
import base64
import hashlib
import json
import re
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from tokenwarden.service.errors import InvalidRequestError, ServerError, StoreUnavailableError
from tokenwarden.service.tokens import (
    MAX_TOKEN_TTL_SECONDS,
    REFRESHED_REASON,
    ValidationFailure,
    ValidationResult,
)
from tokenwarden.storage.errors import StoreUnavailable
from tokenwarden.storage.memory_cache import MemoryCache

TOKEN_PATTERN = re.compile(r"^tw_test_[A-Za-z0-9_-]+$")
TOKEN_ID_PATTERN = re.compile(r"^tok_[A-Za-z0-9]{20}$")


class UnavailableCache(MemoryCache):
    """Cache whose every token/marker operation fails as if Redis were down."""

    async def _down(self, *args, **kwargs):
        raise StoreUnavailable("redis", "connection refused")

    get_token_entry = _down
    set_token_entry = _down
    delete_token_entry = _down
    mark_revoked = _down
    get_revocation = _down
    put_audit_event = _down


class YieldingCache(MemoryCache):
    """Cache that hands control back to the event loop on every read."""

    async def get_token_entry(self, token_hash):
        await asyncio.sleep(0)
        return await super().get_token_entry(token_hash)

    async def get_revocation(self, token_hash):
        await asyncio.sleep(0)
        return await super().get_revocation(token_hash)


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


class TestProvision:
    async def test_concrete_subject_scenario(self, engine):
        result = await engine.provision("subject-42", ["res:read"], "svc", 3600)

        assert TOKEN_PATTERN.match(result.token)
        assert TOKEN_ID_PATTERN.match(result.token_id)
        assert result.scope == ["res:read"]
        assert result.rate_limit.tier == "standard"
        assert result.rate_limit.requests == 100

        validation = await engine.validate(result.token)
        assert validation.valid is True
        assert validation.token_id == result.token_id
        assert validation.subject_id == "subject-42"
        assert validation.scope == ["res:read"]
        assert validation.service_name == "svc"
        assert validation.rate_limit_remaining == 99

    async def test_plaintext_is_never_stored(self, engine, memory_store):
        result = await engine.provision("subject-1", ["res:read"], "svc")

        record = memory_store.get_token(result.token_id)
        assert record is not None
        assert record.token_hash == _sha256(result.token)
        assert result.token not in repr(record)

    async def test_expiry_defaults_to_configured_ttl(self, build_engine):
        engine = build_engine(default_ttl_seconds=600)
        before = datetime.now(timezone.utc)
        result = await engine.provision("subject-1", ["res:read"], "svc")

        lifetime = result.expires_at - before
        assert timedelta(seconds=599) <= lifetime <= timedelta(seconds=601)

    async def test_provision_mirrors_record_into_cache(self, engine, memory_cache):
        result = await engine.provision("subject-1", ["res:read"], "svc")

        entry = await memory_cache.get_token_entry(_sha256(result.token))
        assert entry["token_id"] == result.token_id
        assert entry["scope"] == ["res:read"]

    async def test_provision_emits_audit_event(self, engine, memory_store):
        result = await engine.provision("subject-1", ["res:read"], "svc")

        events = memory_store.list_audit_events(event_type="token_provision")
        assert len(events) == 1
        assert events[0].token_id == result.token_id
        assert events[0].success is True

    @pytest.mark.parametrize(
        "subject_id, scope, service_name, ttl",
        [
            ("", ["res:read"], "svc", None),
            ("subject-1", [], "svc", None),
            ("subject-1", ["res:read"], "", None),
            ("subject-1", ["no-colon"], "svc", None),
            ("subject-1", "res:read", "svc", None),
            ("subject-1", ["res:read"], "svc", 0),
            ("subject-1", ["res:read"], "svc", -5),
            ("subject-1", ["res:read"], "svc", 10**12),
            ("subject-1", ["res:read"], "svc", MAX_TOKEN_TTL_SECONDS + 1),
        ],
    )
    async def test_invalid_requests_rejected(self, engine, memory_store, subject_id, scope, service_name, ttl):
        with pytest.raises(InvalidRequestError):
            await engine.provision(subject_id, scope, service_name, ttl)
        assert memory_store.tokens == {}

    async def test_hashes_are_unique(self, engine, memory_store):
        for i in range(200):
            await engine.provision(f"subject-{i}", ["res:read"], "svc")

        hashes = {record.token_hash for record in memory_store.tokens.values()}
        assert len(hashes) == 200


class TestValidate:
    @pytest.mark.parametrize("raw", [None, "", "garbage", "tw_test_", "Bearer "])
    async def test_malformed_tokens(self, engine, raw):
        result = await engine.validate(raw)
        assert result.valid is False
        assert result.reason == ValidationFailure.INVALID_FORMAT

    async def test_accepts_authorization_header_value(self, engine):
        provisioned = await engine.provision("subject-1", ["res:read"], "svc")

        result = await engine.validate(f"Bearer {provisioned.token}")
        assert result.valid is True

    async def test_unknown_token_not_found(self, engine, memory_store):
        result = await engine.validate("tw_test_dW5rbm93bl90b2tlbg")

        assert result.reason == ValidationFailure.NOT_FOUND
        failures = memory_store.list_audit_events(event_type="token_validation_failed")
        assert [event.error_message for event in failures] == ["not_found"]

    async def test_cache_miss_falls_back_to_durable_and_repopulates(self, engine, memory_cache):
        provisioned = await engine.provision("subject-1", ["res:read"], "svc")
        token_hash = _sha256(provisioned.token)
        await memory_cache.delete_token_entry(token_hash)

        result = await engine.validate(provisioned.token)

        assert result.valid is True
        assert await memory_cache.get_token_entry(token_hash) is not None

    async def test_usage_is_recorded(self, engine, memory_store):
        provisioned = await engine.provision("subject-1", ["res:read"], "svc")

        await engine.validate(provisioned.token)
        await engine.validate(provisioned.token)

        record = memory_store.get_token(provisioned.token_id)
        assert record.request_count == 2
        assert record.last_used_at is not None

    async def test_token_expires(self, engine):
        provisioned = await engine.provision("subject-1", ["res:read"], "svc", ttl_seconds=1)

        assert (await engine.validate(provisioned.token)).valid is True
        time.sleep(1.1)
        result = await engine.validate(provisioned.token)
        assert result.valid is False
        assert result.reason == ValidationFailure.EXPIRED

    async def test_success_emits_validated_event(self, engine, memory_store):
        provisioned = await engine.provision("subject-1", ["res:read"], "svc")
        await engine.validate(provisioned.token)

        events = memory_store.list_audit_events(event_type="token_validated")
        assert len(events) == 1
        assert events[0].token_id == provisioned.token_id


class TestRateLimitBoundary:
    async def test_nth_request_has_zero_remaining_and_next_is_limited(self, build_engine, memory_store):
        engine = build_engine(limits={"standard": 3})
        provisioned = await engine.provision("subject-1", ["res:read"], "svc")

        remaining = [
            (await engine.validate(provisioned.token)).rate_limit_remaining for _ in range(3)
        ]
        assert remaining == [2, 1, 0]

        limited = await engine.validate(provisioned.token)
        assert limited.valid is False
        assert limited.reason == ValidationFailure.RATE_LIMITED
        assert limited.rate_limit_reset is not None
        # throttled requests still count as usage
        assert memory_store.get_token(provisioned.token_id).request_count == 4

    async def test_admin_tier_applies_to_admin_scope(self, engine):
        provisioned = await engine.provision("ops", ["admin:*"], "operator")

        assert provisioned.rate_limit.tier == "admin"
        result = await engine.validate(provisioned.token)
        assert result.rate_limit_remaining == 9999

    async def test_counter_outage_is_not_a_validation_negative(self, engine, memory_cache):
        provisioned = await engine.provision("subject-1", ["res:read"], "svc")

        with patch.object(
            memory_cache,
            "increment_within_limit",
            AsyncMock(side_effect=StoreUnavailable("redis", "timeout")),
        ):
            with pytest.raises(StoreUnavailableError):
                await engine.validate(provisioned.token)


class TestRevoke:
    async def test_revoked_token_fails_validation(self, engine):
        provisioned = await engine.provision("subject-1", ["res:read"], "svc")

        await engine.revoke(provisioned.token_id, "compromised")
        result = await engine.validate(provisioned.token)

        assert result.valid is False
        assert result.reason == ValidationFailure.REVOKED

    async def test_revocation_final_when_cache_unavailable(self, build_engine):
        engine = build_engine(cache=UnavailableCache())
        provisioned = await engine.provision("subject-1", ["res:read"], "svc")
        assert (await engine.validate(provisioned.token)).valid is True

        await engine.revoke(provisioned.token_id, "compromised")
        result = await engine.validate(provisioned.token)

        assert result.reason == ValidationFailure.REVOKED

    async def test_revocation_final_when_cache_entry_survives(self, engine, memory_cache):
        provisioned = await engine.provision("subject-1", ["res:read"], "svc")
        outage = AsyncMock(side_effect=StoreUnavailable("redis", "timeout"))

        with patch.object(memory_cache, "mark_revoked", outage), patch.object(
            memory_cache, "delete_token_entry", outage
        ):
            await engine.revoke(provisioned.token_id, "compromised")

        # the stale entry is still cached and no marker was written
        assert await memory_cache.get_token_entry(_sha256(provisioned.token)) is not None
        result = await engine.validate(provisioned.token)
        assert result.reason == ValidationFailure.REVOKED
        # the next lookup is stopped by the marker written on the way out
        assert await memory_cache.get_revocation(_sha256(provisioned.token)) is not None

    async def test_revoke_is_idempotent(self, engine):
        provisioned = await engine.provision("subject-1", ["res:read"], "svc")

        first = await engine.revoke(provisioned.token_id, "compromised")
        second = await engine.revoke(provisioned.token_id, "rotated")

        assert first.newly_revoked is True
        assert second.newly_revoked is False
        assert second.revoked_at == first.revoked_at
        assert second.reason == "compromised"

    async def test_revoke_unknown_id_succeeds(self, engine, memory_store):
        result = await engine.revoke("tok_doesnotexist", "cleanup")

        assert result.token_id == "tok_doesnotexist"
        assert result.revoked_at is None
        assert len(memory_store.list_audit_events(event_type="token_revoked")) == 1

    async def test_default_reason(self, engine):
        provisioned = await engine.provision("subject-1", ["res:read"], "svc")
        result = await engine.revoke(provisioned.token_id)
        assert result.reason == "manual revocation"

    async def test_revoke_requires_id(self, engine):
        with pytest.raises(InvalidRequestError):
            await engine.revoke("")


class TestRefresh:
    async def test_refresh_replaces_token(self, engine, memory_store):
        old = await engine.provision("subject-1", ["res:read", "res:write"], "svc")

        result = await engine.refresh(old.token, ttl_seconds=7200)

        assert result.ok is True
        new = result.provisioned
        assert new.token != old.token
        assert new.subject_id == "subject-1"
        assert new.scope == ["res:read", "res:write"]
        assert new.service_name == "svc"
        assert result.previous_token_id == old.token_id

        old_result = await engine.validate(old.token)
        assert old_result.reason in (ValidationFailure.REVOKED, ValidationFailure.NOT_FOUND)
        assert (await engine.validate(new.token)).valid is True

        refreshed = memory_store.list_audit_events(event_type="token_refreshed")
        assert len(refreshed) == 1
        assert refreshed[0].token_id == old.token_id
        assert refreshed[0].meta["new_token_id"] == new.token_id
        assert memory_store.get_token(old.token_id).revocation_reason == REFRESHED_REASON

    async def test_failed_validation_performs_no_mutation(self, engine, memory_store):
        provisioned = await engine.provision("subject-1", ["res:read"], "svc")
        await engine.revoke(provisioned.token_id, "compromised")
        token_count = len(memory_store.tokens)

        result = await engine.refresh(provisioned.token)

        assert result.ok is False
        assert result.reason == ValidationFailure.REVOKED
        assert len(memory_store.tokens) == token_count
        assert memory_store.list_audit_events(event_type="token_refreshed") == []

    @pytest.mark.parametrize("ttl", [0, 10**12])
    async def test_out_of_range_ttl_rejected_before_revoking(self, engine, memory_store, ttl):
        provisioned = await engine.provision("subject-1", ["res:read"], "svc")

        with pytest.raises(InvalidRequestError):
            await engine.refresh(provisioned.token, ttl_seconds=ttl)
        assert memory_store.get_token(provisioned.token_id).revoked_at is None

    async def test_concurrent_refreshes_issue_one_replacement(self, build_engine, memory_store):
        engine = build_engine(cache=YieldingCache())
        old = await engine.provision("subject-1", ["res:read"], "svc")

        results = await asyncio.gather(engine.refresh(old.token), engine.refresh(old.token))

        assert sorted(result.ok for result in results) == [False, True]
        lost = next(result for result in results if not result.ok)
        assert lost.reason == ValidationFailure.REVOKED
        assert lost.provisioned is None
        live = [record for record in memory_store.tokens.values() if record.revoked_at is None]
        assert len(live) == 1
        assert len(memory_store.list_audit_events(event_type="token_refreshed")) == 1

    async def test_validated_result_without_identity_is_server_error(self, engine, memory_store):
        engine.validate = AsyncMock(return_value=ValidationResult(valid=True))

        with pytest.raises(ServerError):
            await engine.refresh("tw_test_anything")
        assert memory_store.tokens == {}


class TestStoreOutage:
    async def test_durable_outage_raises(self, build_engine, memory_store):
        engine = build_engine(cache=None)
        provisioned = await engine.provision("subject-1", ["res:read"], "svc")

        with patch.object(
            memory_store,
            "get_token_by_hash",
            side_effect=StoreUnavailable("postgres", "timeout"),
        ):
            with pytest.raises(StoreUnavailableError) as excinfo:
                await engine.validate(provisioned.token)
        assert excinfo.value.status_code == 503
        assert excinfo.value.detail == {"store": "postgres"}

    async def test_revoke_outage_raises(self, engine, memory_store):
        with patch.object(
            memory_store, "revoke_token", side_effect=StoreUnavailable("postgres", "timeout")
        ):
            with pytest.raises(StoreUnavailableError):
                await engine.revoke("tok_anything")


class TestStats:
    async def test_stats_reflect_lifecycle(self, engine):
        kept = await engine.provision("subject-1", ["res:read"], "svc")
        dropped = await engine.provision("subject-2", ["res:read"], "svc")
        await engine.provision("subject-3", ["res:read"], "svc")
        await engine.revoke(dropped.token_id)
        await engine.validate(kept.token)
        await engine.validate(kept.token)

        stats = await engine.stats()

        assert stats.total_tokens == 3
        assert stats.active_tokens == 2
        assert stats.revoked_tokens == 1
        assert stats.expired_tokens == 0
        assert stats.requests_24h == 2


class TestServiceSession:
    def _claims(self, session_token: str) -> dict:
        body = session_token[len("sess_"):].split(".")[0]
        return json.loads(base64.urlsafe_b64decode(body + "=" * (-len(body) % 4)))

    async def test_wildcard_scope_grants_session(self, engine):
        provisioned = await engine.provision("svc-orders", ["billing:*"], "orders")
        validation = await engine.validate(provisioned.token)

        session = engine.mint_service_session(validation, "billing", "charge")

        assert session is not None
        assert session.session_token.startswith("sess_")
        claims = self._claims(session.session_token)
        assert claims["target"] == "billing"
        assert claims["action"] == "charge"
        assert claims["tid"] == provisioned.token_id
        assert claims["exp"] - claims["iat"] == 300

    async def test_missing_scope_denied(self, engine):
        provisioned = await engine.provision("svc-orders", ["billing:read"], "orders")
        validation = await engine.validate(provisioned.token)

        assert engine.mint_service_session(validation, "billing", "charge") is None
        assert engine.mint_service_session(validation, "payments", "read") is None

    async def test_admin_scope_grants_anything(self, engine):
        provisioned = await engine.provision("ops", ["admin:*"], "operator")
        validation = await engine.validate(provisioned.token)

        assert engine.mint_service_session(validation, "payments", "refund") is not None

    async def test_requires_valid_validation(self, engine):
        rejected = await engine.validate("garbage")
        with pytest.raises(InvalidRequestError):
            engine.mint_service_session(rejected, "billing", "charge")
