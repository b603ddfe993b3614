from __future__ import annotations

from abc import ABC, abstractmethod

from meetbook.domain.entities.availability_rule import AvailabilityRule


class AvailabilityRuleRepository(ABC):
    @abstractmethod
    async def list_rules(self, owner_id: str) -> list[AvailabilityRule]:
        """List rules for an owner. Raises NotFoundError if the owner has none."""
        raise NotImplementedError


class AvailabilityRuleAdminRepository(AvailabilityRuleRepository):
    """Write capability every concrete rule repository must provide."""

    @abstractmethod
    async def upsert_rule(self, rule: AvailabilityRule) -> AvailabilityRule:
        raise NotImplementedError

    @abstractmethod
    async def delete_rule(self, owner_id: str, rule_id: str) -> None:
        raise NotImplementedError
