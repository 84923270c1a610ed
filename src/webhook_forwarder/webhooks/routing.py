"""
Rule-based destination resolution.

Maps an event's source label onto the destinations its delivery
rules point at.
"""

from typing import Iterable, List, Set

import structlog

from .events import DeliveryRule, Destination

logger = structlog.get_logger(__name__)


def resolve_destinations(
    source: str,
    rules: Iterable[DeliveryRule],
    destinations: Iterable[Destination],
) -> List[Destination]:
    """
    Resolve the ordered destinations that should receive an event.

    Rules are visited in declaration order and every matching rule
    contributes its destination, so one event can fan out to several
    targets. Rules naming an unknown destination are skipped, and a
    destination reached by more than one rule is only returned once.

    Args:
        source: Source label of the event
        rules: Delivery rules in declaration order
        destinations: Known destinations

    Returns:
        Destinations in rule order, possibly empty
    """
    by_name = {}
    for destination in destinations:
        by_name.setdefault(destination.name, destination)

    resolved: List[Destination] = []
    seen: Set[str] = set()
    for rule in rules:
        if not rule.matches(source):
            continue
        destination = by_name.get(rule.destination)
        if destination is None or destination.name in seen:
            continue
        seen.add(destination.name)
        resolved.append(destination)
    return resolved


class RoutingResolver:
    """Resolves routes and reports each unresolvable destination name once."""

    def __init__(self) -> None:
        self._reported: Set[str] = set()

    def resolve(
        self,
        source: str,
        rules: Iterable[DeliveryRule],
        destinations: Iterable[Destination],
    ) -> List[Destination]:
        rules = list(rules)
        destinations = list(destinations)
        self._report_unresolved(rules, destinations)
        return resolve_destinations(source, rules, destinations)

    def _report_unresolved(
        self, rules: List[DeliveryRule], destinations: List[Destination]
    ) -> None:
        names = {d.name for d in destinations}
        for rule in rules:
            if rule.destination in names or rule.destination in self._reported:
                continue
            self._reported.add(rule.destination)
            logger.warning(
                "Delivery rule references unknown destination",
                destination=rule.destination,
                source=rule.source,
                known_destinations=sorted(names),
            )
