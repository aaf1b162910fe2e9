"""Hardware selection for machine requests.

Allocation runs in two phases:

1. Fast path: hardware already labelled as owned by the machine is returned
   as-is, so a machine that was claimed once never re-allocates.
2. Selection: every required affinity term (OR-combined) is listed with an
   extra "owner-name label does not exist" clause, the union is scored by the
   preferred terms and ranked.

Scoring is last-match-wins: for each preferred term, in order, every matching
candidate's score is *set* to the term's weight. Weights are not summed.
Ties are broken by (namespace, name) so that repeated calls against the same
inventory always pick the same unit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import NoHardwareAvailableError
from .models import (
    HARDWARE_OWNER_NAME_LABEL,
    HARDWARE_OWNER_NAMESPACE_LABEL,
    Hardware,
    HardwareAffinity,
    HardwareAffinityTerm,
    TinkerbellMachine,
)
from .selectors import Operator, Selector, requirement
from .store import ResourceStore

logger = logging.getLogger(__name__)

UNCLAIMED = requirement(HARDWARE_OWNER_NAME_LABEL, Operator.DOES_NOT_EXIST)


@dataclass
class ScoredCandidate:
    """A candidate hardware unit and its preference score."""

    hardware: Hardware
    score: int = 0

    @property
    def sort_key(self) -> tuple[int, str, str]:
        return (-self.score, self.hardware.namespace, self.hardware.name)


def owned_by(machine: TinkerbellMachine) -> Selector:
    """Selector for hardware carrying the machine's owner labels."""
    return Selector.from_labels(
        {
            HARDWARE_OWNER_NAME_LABEL: machine.name,
            HARDWARE_OWNER_NAMESPACE_LABEL: machine.namespace,
        }
    )


def score_candidates(
    candidates: list[Hardware], affinity: HardwareAffinity
) -> list[ScoredCandidate]:
    """Score candidates by preferred terms, last matching term wins.

    Raises:
        SelectorError: If a preferred term's selector is malformed.
    """
    scored = [ScoredCandidate(hardware=hw) for hw in candidates]
    for term in affinity.preferred:
        selector = Selector.from_label_selector(term.hardware_affinity_term.label_selector)
        for candidate in scored:
            if selector.matches(candidate.hardware.metadata.labels):
                candidate.score = term.weight
    return scored


def rank_candidates(scored: list[ScoredCandidate]) -> list[ScoredCandidate]:
    """Sort by score descending, then namespace and name ascending."""
    return sorted(scored, key=lambda c: c.sort_key)


class HardwareAllocator:
    """Chooses the hardware unit a machine should run on."""

    def __init__(self, store: ResourceStore) -> None:
        self._store = store

    def assigned_hardware(self, machine: TinkerbellMachine) -> Hardware | None:
        """Return hardware already claimed by the machine, if any."""
        owned = self._store.list(Hardware, owned_by(machine))
        if not owned:
            return None
        if len(owned) > 1:
            logger.warning(
                "Multiple hardware units claimed by one machine, using the first",
                extra={
                    "machine": f"{machine.namespace}/{machine.name}",
                    "hardware": [f"{hw.namespace}/{hw.name}" for hw in owned],
                },
            )
        return min(owned, key=lambda hw: hw.key)

    def candidates(self, machine: TinkerbellMachine) -> list[Hardware]:
        """List unclaimed hardware matching any required affinity term.

        A unit matching several terms is listed once.

        Raises:
            SelectorError: If a required term's selector is malformed.
        """
        affinity = machine.spec.hardware_affinity or HardwareAffinity()
        # No terms means "any unclaimed hardware"
        required = affinity.required or [HardwareAffinityTerm()]

        seen: dict[tuple[str, str], Hardware] = {}
        for term in required:
            selector = Selector.from_label_selector(term.label_selector).with_requirement(UNCLAIMED)
            for hw in self._store.list(Hardware, selector):
                seen.setdefault(hw.key, hw)
        return list(seen.values())

    def rank(self, machine: TinkerbellMachine) -> list[ScoredCandidate]:
        """Candidates for the machine, best first."""
        affinity = machine.spec.hardware_affinity or HardwareAffinity()
        return rank_candidates(score_candidates(self.candidates(machine), affinity))

    def allocate(self, machine: TinkerbellMachine) -> Hardware:
        """Return the hardware the machine owns or should claim next.

        Raises:
            NoHardwareAvailableError: If no unclaimed hardware satisfies the
                machine's required affinity.
            SelectorError: If any affinity selector is malformed.
        """
        hardware = self.assigned_hardware(machine)
        if hardware is not None:
            return hardware

        ranked = self.rank(machine)
        if not ranked:
            raise NoHardwareAvailableError(
                f"no hardware available for machine {machine.namespace}/{machine.name}",
                machine=f"{machine.namespace}/{machine.name}",
            )

        best = ranked[0]
        logger.debug(
            "Ranked hardware candidates",
            extra={
                "machine": f"{machine.namespace}/{machine.name}",
                "candidates": [
                    {"hardware": f"{c.hardware.namespace}/{c.hardware.name}", "score": c.score}
                    for c in ranked
                ],
            },
        )
        return best.hardware
