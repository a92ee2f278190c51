"""Reporting-hierarchy resolution over the Person forest"""

import logging
from collections import deque
from typing import Iterable, Set

from sqlalchemy.orm import Session

from issuesync.models import Person, PersonModule

logger = logging.getLogger(__name__)


class HierarchyResolver:
    """Computes who reports to whom, returning tracker external ids"""

    def __init__(self, db: Session):
        self.db = db

    def _children(self, person_ids: Iterable[int]) -> list[tuple[int, int | None]]:
        ids = list(person_ids)
        if not ids:
            return []
        rows = (
            self.db.query(Person.id, Person.external_id)
            .filter(Person.reports_to_id.in_(ids))
            .order_by(Person.id)
            .all()
        )
        return [(row[0], row[1]) for row in rows]

    def resolve_reports(self, person_id: int, include_indirect: bool = False) -> Set[int]:
        """External ids of the people reporting to ``person_id``.

        Direct reports only unless ``include_indirect``. Unknown ids resolve to
        an empty set. The traversal skips visited people, so a cycle in the
        data terminates instead of looping.
        """
        result: Set[int] = set()

        if not include_indirect:
            for child_id, external_id in self._children([person_id]):
                if child_id != person_id and external_id is not None:
                    result.add(int(external_id))
            return result

        visited = {person_id}
        frontier = deque([person_id])
        while frontier:
            # Expand one BFS level per query.
            level = [frontier.popleft() for _ in range(len(frontier))]
            for child_id, external_id in self._children(level):
                if child_id in visited:
                    logger.warning(f"Reporting cycle detected at person {child_id}; skipping")
                    continue
                visited.add(child_id)
                frontier.append(child_id)
                if external_id is not None:
                    result.add(int(external_id))
        return result

    def resolve_module_members(self, modules: Iterable[str]) -> Set[int]:
        """External ids of people belonging to any of ``modules``."""
        names = [m for m in modules if m]
        if not names:
            return set()
        rows = (
            self.db.query(Person.external_id)
            .join(PersonModule, PersonModule.person_id == Person.id)
            .filter(PersonModule.module.in_(names), Person.external_id.isnot(None))
            .distinct()
            .all()
        )
        return {int(row[0]) for row in rows}
