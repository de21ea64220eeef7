from collections.abc import Iterable

from clinicbook.domain.models import Actor, Role


class IdentityDirectory:
    """In-memory IdentityProviderProtocol: a registry of known patients and staff."""

    def __init__(self, identities: Iterable[Actor] = ()) -> None:
        self._identities: dict[str, Actor] = {}
        for identity in identities:
            self.register(identity)

    def register(self, identity: Actor) -> None:
        if identity.role is Role.SYSTEM:
            raise ValueError("the system role cannot be issued to an identity")
        self._identities[identity.actor_id] = identity

    async def resolve(self, identity_id: str) -> Actor | None:
        return self._identities.get(identity_id)
