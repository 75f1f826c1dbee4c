"""Tests for complaint-scoped access grants."""

import pytest

from caldost.service.access import GrantHolder
from caldost.service.access_grants import AccessGrantManager, grant_key
from caldost.service.errors import AccessLinkInvalidError
from caldost.storage.models import ComplaintDomain
from caldost.storage.secret_store import MemorySecretStore

DAY = 24 * 60 * 60


@pytest.fixture
def grants(clock):
    return AccessGrantManager(MemorySecretStore(clock=clock), ttl_seconds=DAY)


class TestAccessGrants:
    @pytest.mark.asyncio
    async def test_grant_authorizes_repeatedly_within_ttl(self, grants, clock):
        token = await grants.grant(ComplaintDomain.EDUCATION, "EDU-2026-AAAA")
        holder = await grants.authorize(ComplaintDomain.EDUCATION, "EDU-2026-AAAA", token)
        assert holder == GrantHolder(ComplaintDomain.EDUCATION, "EDU-2026-AAAA")
        clock.advance(DAY - 1)
        assert await grants.authorize(ComplaintDomain.EDUCATION, "EDU-2026-AAAA", token) == holder

    @pytest.mark.asyncio
    async def test_grant_expires_after_a_day(self, grants, clock):
        token = await grants.grant(ComplaintDomain.EDUCATION, "EDU-2026-AAAA")
        clock.advance(DAY + 1)
        with pytest.raises(AccessLinkInvalidError):
            await grants.authorize(ComplaintDomain.EDUCATION, "EDU-2026-AAAA", token)

    @pytest.mark.asyncio
    async def test_wrong_token_rejected(self, grants):
        await grants.grant(ComplaintDomain.HEALTH, "HLT-2026-AAAA")
        with pytest.raises(AccessLinkInvalidError):
            await grants.authorize(ComplaintDomain.HEALTH, "HLT-2026-AAAA", "nope")

    @pytest.mark.asyncio
    async def test_missing_token_rejected(self, grants):
        await grants.grant(ComplaintDomain.HEALTH, "HLT-2026-AAAA")
        with pytest.raises(AccessLinkInvalidError):
            await grants.authorize(ComplaintDomain.HEALTH, "HLT-2026-AAAA", None)

    @pytest.mark.asyncio
    async def test_grant_is_scoped_to_domain_and_number(self, grants):
        token = await grants.grant(ComplaintDomain.EDUCATION, "EDU-2026-AAAA")
        with pytest.raises(AccessLinkInvalidError):
            await grants.authorize(ComplaintDomain.EDUCATION, "EDU-2026-BBBB", token)
        with pytest.raises(AccessLinkInvalidError):
            await grants.authorize(ComplaintDomain.HEALTH, "EDU-2026-AAAA", token)

    @pytest.mark.asyncio
    async def test_regrant_replaces_token(self, grants):
        first = await grants.grant(ComplaintDomain.EDUCATION, "EDU-2026-AAAA")
        second = await grants.grant(ComplaintDomain.EDUCATION, "EDU-2026-AAAA")
        assert first != second
        with pytest.raises(AccessLinkInvalidError):
            await grants.authorize(ComplaintDomain.EDUCATION, "EDU-2026-AAAA", first)
        await grants.authorize(ComplaintDomain.EDUCATION, "EDU-2026-AAAA", second)

    def test_namespaces_differ_per_domain(self):
        assert grant_key(ComplaintDomain.EDUCATION, "N") == "complaint:access:N"
        assert grant_key(ComplaintDomain.HEALTH, "N") == "health:complaint:access:N"

    def test_error_message_is_uniform(self):
        assert AccessLinkInvalidError().message == "access link expired or invalid"
        assert AccessLinkInvalidError().status_code == 401
