"""Tests for signed resource indicators."""

from __future__ import annotations

import uuid
from dataclasses import replace

import pytest
from conftest import TEST_RESOURCE_SECRET, FakeClock, login

from n8n_mcp_security.audit.log import AuditLog
from n8n_mcp_security.audit.models import AuditAction, AuditQuery
from n8n_mcp_security.auth.tokens import TokenService
from n8n_mcp_security.core import SecurityCore
from n8n_mcp_security.errors import ResourceIndicatorInvalid, ValidationError
from n8n_mcp_security.resources.indicators import (
    PUBLIC_AUDIENCE,
    ResourceIndicatorService,
    capabilities_for,
    derive_indicator,
)

DAY = 24 * 3600


class TestDeriveIndicator:
    def test_is_name_based_uuid(self) -> None:
        expected = uuid.uuid5(uuid.NAMESPACE_DNS, "urn:n8n:mcp:server:workflow:wf-42")
        assert derive_indicator("workflow", "wf-42") == str(expected)

    def test_distinct_resources_differ(self) -> None:
        assert derive_indicator("workflow", "1") != derive_indicator("execution", "1")


class TestCapabilities:
    def test_developer_on_workflow(self) -> None:
        perms = frozenset(
            {"create_workflow", "update_workflow", "execute_workflow", "view_workflow"}
        )
        assert capabilities_for("workflow", perms) == ["create", "execute", "read", "update"]

    def test_unknown_type_grants_nothing(self) -> None:
        assert capabilities_for("spaceship", frozenset({"view_workflow"})) == []


class TestGenerate:
    def test_public_indicator(self, indicators: ResourceIndicatorService, clock: FakeClock) -> None:
        record = indicators.generate("workflow", "wf-1")
        assert record.audience == PUBLIC_AUDIENCE
        assert record.timestamp == int(clock.now * 1000)
        assert record.server_id == "server-test"
        assert record.version == "1.0.0"
        assert len(record.nonce) == 32
        assert len(record.signature) == 64

    def test_same_resource_same_indicator_fresh_nonce(
        self, indicators: ResourceIndicatorService
    ) -> None:
        first = indicators.generate("workflow", "wf-1")
        second = indicators.generate("workflow", "wf-1")
        assert first.indicator == second.indicator
        assert first.nonce != second.nonce
        assert indicators.get(first.indicator) == second
        assert len(indicators) == 1

    def test_token_sets_audience(self, core: SecurityCore) -> None:
        token = login(core, "victor", "viewer123")
        record = core.indicators.generate("workflow", "wf-1", token)
        assert record.audience == "tenant-a:viewer"

    def test_invalid_token_treated_as_public(self, indicators: ResourceIndicatorService) -> None:
        assert indicators.generate("workflow", "wf-1", "garbage").audience == PUBLIC_AUDIENCE

    @pytest.mark.parametrize(
        "resource_type, resource_id",
        [
            ("", "1"),
            ("Workflow", "1"),
            ("work flow", "1"),
            ("workflow", ""),
            ("workflow", "x" * 257),
        ],
    )
    def test_rejects_bad_input(
        self, indicators: ResourceIndicatorService, resource_type: str, resource_id: str
    ) -> None:
        with pytest.raises(ValidationError):
            indicators.generate(resource_type, resource_id)

    def test_generation_is_audited(self, core: SecurityCore) -> None:
        token = login(core, "alice", "dev123")
        indicator = core.generate_resource_indicator("workflow", "wf-9", token)
        entries = core.audit.query(AuditQuery(action=AuditAction.RESOURCE_INDICATOR_GENERATED))
        assert len(entries) == 1
        assert entries[0].user_id == "dev-001"
        assert entries[0].metadata["indicator"] == indicator

    def test_rejects_blank_secret(self, tokens: TokenService) -> None:
        with pytest.raises(ValueError):
            ResourceIndicatorService("", tokens, server_id="s")


class TestValidate:
    def test_public_without_token(self, indicators: ResourceIndicatorService) -> None:
        record = indicators.generate("workflow", "wf-1")
        result = indicators.validate(record.indicator)
        assert result.valid is True
        assert result.permissions == ["read"]
        assert result.resource == record

    def test_unknown_indicator(self, indicators: ResourceIndicatorService) -> None:
        result = indicators.validate(str(uuid.uuid4()))
        assert result.valid is False
        assert result.reason == "not found"

    @pytest.mark.parametrize(
        "field_name, value",
        [
            ("resource_type", "execution"),
            ("resource_id", "wf-2"),
            ("audience", "default:admin"),
            ("timestamp", 0),
            ("nonce", "0" * 32),
            ("server_id", "other-server"),
            ("version", "2.0.0"),
            ("signature", "0" * 64),
        ],
    )
    def test_any_field_edit_is_tampering(
        self, indicators: ResourceIndicatorService, field_name: str, value: object
    ) -> None:
        record = indicators.generate("workflow", "wf-1")
        indicators._records[record.indicator] = replace(record, **{field_name: value})
        result = indicators.validate(record.indicator)
        assert result.valid is False
        assert result.reason == "tampered"

    def test_other_secret_cannot_validate(
        self, indicators: ResourceIndicatorService, tokens: TokenService, clock: FakeClock
    ) -> None:
        record = indicators.generate("workflow", "wf-1")
        other = ResourceIndicatorService(
            TEST_RESOURCE_SECRET + "-rotated", tokens, server_id="server-test", clock=clock
        )
        other._records[record.indicator] = record
        assert other.validate(record.indicator).reason == "tampered"

    def test_expiry(self, indicators: ResourceIndicatorService, clock: FakeClock) -> None:
        record = indicators.generate("workflow", "wf-1")
        clock.advance(DAY)
        assert indicators.validate(record.indicator).valid is True
        clock.advance(1)
        result = indicators.validate(record.indicator)
        assert result.valid is False
        assert result.reason == "expired"

    def test_scoped_indicator_requires_token(self, core: SecurityCore) -> None:
        token = login(core, "alice", "dev123")
        indicator = core.generate_resource_indicator("workflow", "wf-42", token)
        result = core.validate_resource_indicator(indicator)
        assert result.valid is False
        assert result.reason == "authentication required"

    def test_owner_gets_capabilities(self, core: SecurityCore) -> None:
        token = login(core, "alice", "dev123")
        indicator = core.generate_resource_indicator("workflow", "wf-42", token)
        result = core.validate_resource_indicator(indicator, token)
        assert result.valid is True
        assert result.permissions == ["create", "execute", "read", "update"]

    def test_other_audience_rejected(self, core: SecurityCore) -> None:
        alice = login(core, "alice", "dev123")
        victor = login(core, "victor", "viewer123")
        indicator = core.generate_resource_indicator("workflow", "wf-42", alice)
        result = core.validate_resource_indicator(indicator, victor)
        assert result.valid is False
        assert result.reason == "insufficient permissions"

    def test_admin_overrides_audience(self, core: SecurityCore) -> None:
        alice = login(core, "alice", "dev123")
        admin = login(core, "admin", "admin123")
        indicator = core.generate_resource_indicator("workflow", "wf-42", alice)
        result = core.validate_resource_indicator(indicator, admin)
        assert result.valid is True
        assert result.permissions == ["create", "delete", "execute", "read", "update"]

    def test_public_indicator_with_token_uses_role(self, core: SecurityCore) -> None:
        indicator = core.generate_resource_indicator("workflow", "wf-1")
        gwen = login(core, "gwen", "guest123")
        result = core.validate_resource_indicator(indicator, gwen)
        assert result.valid is True
        assert result.permissions == ["read"]

    def test_validate_or_raise(self, indicators: ResourceIndicatorService) -> None:
        with pytest.raises(ResourceIndicatorInvalid) as exc_info:
            indicators.validate_or_raise("missing")
        assert exc_info.value.reason == "not found"

    def test_to_dict(self, indicators: ResourceIndicatorService) -> None:
        record = indicators.generate("template", "t-1")
        data = indicators.validate(record.indicator).to_dict()
        assert data == {
            "valid": True,
            "permissions": ["read"],
            "resourceType": "template",
            "resourceId": "t-1",
        }

    def test_disabled_service_reports_stored_capabilities(
        self, core: SecurityCore, clock: FakeClock
    ) -> None:
        service = ResourceIndicatorService(
            TEST_RESOURCE_SECRET, core.tokens, server_id="s", enabled=False, clock=clock
        )
        alice = login(core, "alice", "dev123")
        record = service.generate("template", "t-1", alice)
        result = service.validate(record.indicator, alice)
        assert result.valid is True
        assert result.permissions == ["create", "delete", "read", "update"]
        assert len(service) == 1

    def test_disabled_service_accepts_everything(
        self, tokens: TokenService, clock: FakeClock
    ) -> None:
        service = ResourceIndicatorService(
            TEST_RESOURCE_SECRET, tokens, server_id="s", enabled=False, clock=clock
        )
        result = service.validate("anything")
        assert result.valid is True
        assert result.permissions == []


class TestReissue:
    def test_scoped_indicator_cannot_be_made_public(self, core: SecurityCore) -> None:
        alice = login(core, "alice", "dev123")
        indicator = core.generate_resource_indicator("workflow", "wf-42", alice)

        with pytest.raises(ValidationError, match="another audience"):
            core.generate_resource_indicator("workflow", "wf-42")

        result = core.validate_resource_indicator(indicator)
        assert result.valid is False
        assert result.reason == "authentication required"
        assert core.indicators.get(indicator).audience == "default:developer"

    def test_other_audience_cannot_take_over(self, core: SecurityCore) -> None:
        alice = login(core, "alice", "dev123")
        victor = login(core, "victor", "viewer123")
        indicator = core.generate_resource_indicator("workflow", "wf-42", alice)
        with pytest.raises(ValidationError):
            core.generate_resource_indicator("workflow", "wf-42", victor)
        assert core.validate_resource_indicator(indicator, alice).valid is True

    def test_same_audience_refreshes(self, core: SecurityCore, clock: FakeClock) -> None:
        alice = login(core, "alice", "dev123")
        first = core.indicators.generate("workflow", "wf-42", alice)
        clock.advance(60)
        second = core.indicators.generate("workflow", "wf-42", alice)
        assert second.nonce != first.nonce
        assert second.timestamp > first.timestamp
        assert core.indicators.get(first.indicator) == second

    def test_expired_record_can_be_reissued(
        self, indicators: ResourceIndicatorService, clock: FakeClock
    ) -> None:
        record = indicators.generate("workflow", "wf-42")
        indicators._records[record.indicator] = replace(
            record, audience="default:developer"
        )
        clock.advance(DAY + 1)
        reissued = indicators.generate("workflow", "wf-42")
        assert reissued.audience == PUBLIC_AUDIENCE
        assert indicators.validate(reissued.indicator).valid is True

    def test_revoked_indicator_can_be_reissued(self, core: SecurityCore) -> None:
        alice = login(core, "alice", "dev123")
        indicator = core.generate_resource_indicator("workflow", "wf-42", alice)
        assert core.indicators.revoke(indicator) is True
        core.generate_resource_indicator("workflow", "wf-42")
        assert core.validate_resource_indicator(indicator).valid is True

    def test_unverifiable_token_is_audited(
        self, indicators: ResourceIndicatorService, audit: AuditLog
    ) -> None:
        indicators.validate(str(uuid.uuid4()), "garbage")
        entries = audit.query(
            AuditQuery(action=AuditAction.TOKEN_VALIDATION_FAILED)
        )
        assert [e.metadata["context"] for e in entries] == ["resource_indicator"]


class TestHousekeeping:
    def test_revoke(self, indicators: ResourceIndicatorService) -> None:
        record = indicators.generate("workflow", "wf-1")
        assert indicators.revoke(record.indicator) is True
        assert indicators.revoke(record.indicator) is False
        assert indicators.validate(record.indicator).reason == "not found"

    def test_purge_expired(self, indicators: ResourceIndicatorService, clock: FakeClock) -> None:
        indicators.generate("workflow", "old")
        clock.advance(DAY / 2)
        fresh = indicators.generate("workflow", "new")
        clock.advance(DAY / 2 + 1)
        assert indicators.purge_expired() == 1
        assert indicators.get(fresh.indicator) is not None
