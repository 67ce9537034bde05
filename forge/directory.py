"""Participant directory: which model plays which role, and who is healthy."""

import logging

from forge.errors import ForgeError
from forge.models import Participant, Role
from forge.providers.base import AIProvider

logger = logging.getLogger(__name__)

CRITIC_ROLES = (Role.CRITIC, Role.DOMAIN_EXPERT, Role.CODE_REVIEWER)


class NoParticipantAvailable(ForgeError):
    """No enabled, healthy model can fill a role."""


class ParticipantDirectory:
    """Maps roles to participants and participants to provider instances.

    Args:
        providers: Configured model name -> provider instance.
        roles: Role name -> preferred model names, in order of preference.
        humans: Human participants. Listed in the roster, never invoked.
    """

    def __init__(
        self,
        providers: dict[str, AIProvider],
        roles: dict[str, list[str]] | None = None,
        humans: list[Participant] | None = None,
    ) -> None:
        self._providers = dict(providers)
        self._roles = roles or {}
        self._humans = list(humans or [])
        self._health: dict[str, bool] = {}
        self._by_identity: dict[tuple[str, str], str] = {}
        for name, provider in self._providers.items():
            identity = (provider.sdk(), provider.model_string())
            if identity in self._by_identity:
                raise ValueError(f"models {self._by_identity[identity]} and {name} share {identity[0]}/{identity[1]}")
            self._by_identity[identity] = name

    def apply_health(self, results: dict[str, tuple[bool, str]]) -> None:
        """Record health-check results; models never checked count as healthy."""
        for name, (ok, error) in results.items():
            self._health[name] = ok
            if not ok:
                logger.warning("Model %s marked unhealthy: %s", name, error)

    def is_healthy(self, name: str) -> bool:
        return name in self._providers and self._health.get(name, True)

    def healthy_names(self) -> list[str]:
        return [name for name in self._providers if self.is_healthy(name)]

    def participant(self, name: str, role: Role) -> Participant:
        provider = self._providers[name]
        return Participant(
            model_id=provider.model_string(),
            display_name=name,
            provider=provider.sdk(),
            role=role,
        )

    def _preferred(self, role: Role) -> list[str]:
        return [n for n in self._roles.get(role.value, []) if self.is_healthy(n)]

    def resolve(self, role: Role) -> Participant:
        """The model for a single-actor role: configured preference first, else any healthy one.

        Raises:
            NoParticipantAvailable: If no healthy model exists at all.
        """
        preferred = self._preferred(role)
        if preferred:
            return self.participant(preferred[0], role)
        healthy = self.healthy_names()
        if not healthy:
            raise NoParticipantAvailable(f"no healthy model available for role {role.value}")
        logger.info("No configured %s available, falling back to %s", role.value, healthy[0])
        return self.participant(healthy[0], role)

    def resolve_all(self, role: Role = Role.CRITIC) -> list[Participant]:
        """Every participant for a fan-out role. Critics include experts and reviewers."""
        roles = CRITIC_ROLES if role is Role.CRITIC else (role,)
        found: list[Participant] = []
        for r in roles:
            found += [self.participant(name, r) for name in self._preferred(r)]
        if not found:
            healthy = self.healthy_names()
            if not healthy:
                raise NoParticipantAvailable(f"no healthy model available for role {role.value}")
            found = [self.participant(name, role) for name in healthy]
        found += [h for h in self._humans if h.role in roles]
        return found

    def roster(self) -> list[Participant]:
        """Drafter, critics and synthesizer, without duplicates."""
        members = [self.resolve(Role.DRAFTER), *self.resolve_all(Role.CRITIC), self.resolve(Role.SYNTHESIZER)]
        return list(dict.fromkeys(members))

    def voters(self) -> list[Participant]:
        """One participant per distinct model in the roster; humans excluded."""
        seen: set[tuple[str, str]] = set()
        voters: list[Participant] = []
        for member in self.roster():
            key = (member.provider, member.model_id)
            if member.is_human or key in seen:
                continue
            seen.add(key)
            voters.append(member)
        return voters

    def provider_for(self, participant: Participant) -> AIProvider:
        name = self._by_identity.get((participant.provider, participant.model_id))
        if name is None:
            raise NoParticipantAvailable(f"no provider registered for {participant.display_name}")
        return self._providers[name]

    def fallbacks_for(self, participant: Participant) -> list[Participant]:
        """Same role on every other healthy model, in configuration order."""
        own = self._by_identity.get((participant.provider, participant.model_id))
        return [self.participant(name, participant.role) for name in self.healthy_names() if name != own]
