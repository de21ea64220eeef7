import pytest

from clinicbook.booking.adapters.directory import IdentityDirectory
from clinicbook.domain.models import SYSTEM_ACTOR, Actor, Role


class TestIdentityDirectory:
    @pytest.mark.asyncio
    async def test_resolves_registered_identity(self) -> None:
        staff = Actor(actor_id="s1", role=Role.STAFF)
        directory = IdentityDirectory([staff])

        assert await directory.resolve("s1") == staff
        assert await directory.resolve("unknown") is None

    @pytest.mark.asyncio
    async def test_register_replaces(self) -> None:
        directory = IdentityDirectory()
        directory.register(Actor(actor_id="p1", role=Role.PATIENT, display_name="Old"))
        directory.register(Actor(actor_id="p1", role=Role.PATIENT, display_name="New"))

        resolved = await directory.resolve("p1")

        assert resolved is not None
        assert resolved.display_name == "New"

    def test_system_role_is_never_issued(self) -> None:
        with pytest.raises(ValueError, match="system role"):
            IdentityDirectory([SYSTEM_ACTOR])
