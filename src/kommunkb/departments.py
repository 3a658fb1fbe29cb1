"""Department hierarchy traversal over an immutable snapshot."""

from __future__ import annotations

from types import MappingProxyType
from typing import Any, Iterable, Sequence

from kommunkb.models import Department


class DepartmentTree:
    """Adjacency-list view of the department hierarchy.

    Built once per request from the rows returned by the article store. All
    lookups are pure; unknown ids yield empty results rather than errors and
    parent cycles are cut at the first repeated node.
    """

    def __init__(self, departments: Iterable[Department]) -> None:
        by_id: dict[str, Department] = {}
        for department in departments:
            by_id[department.id] = department
        children: dict[str, list[str]] = {dept_id: [] for dept_id in by_id}
        roots: list[str] = []
        for department in by_id.values():
            parent = department.parent_id
            if parent is not None and parent in by_id and parent != department.id:
                children[parent].append(department.id)
            else:
                roots.append(department.id)
        self._by_id = MappingProxyType(by_id)
        self._children = MappingProxyType({key: tuple(value) for key, value in children.items()})
        self._roots = tuple(roots)

    def __contains__(self, department_id: object) -> bool:
        return department_id in self._by_id

    def __len__(self) -> int:
        return len(self._by_id)

    def get(self, department_id: str) -> Department | None:
        return self._by_id.get(department_id)

    def descendants_of(self, department_id: str) -> list[str]:
        """Return the id itself followed by every descendant, depth first."""

        if department_id not in self._by_id:
            return []
        ordered: list[str] = []
        seen: set[str] = set()
        stack = [department_id]
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            ordered.append(current)
            stack.extend(reversed(self._children.get(current, ())))
        return ordered

    def ancestors_of(self, department_id: str) -> list[str]:
        """Return parent ids from the nearest parent up to the root."""

        ancestors: list[str] = []
        seen = {department_id}
        current = self._by_id.get(department_id)
        while current is not None and current.parent_id is not None:
            parent_id = current.parent_id
            if parent_id in seen or parent_id not in self._by_id:
                break
            seen.add(parent_id)
            ancestors.append(parent_id)
            current = self._by_id[parent_id]
        return ancestors

    def full_path(self, department_id: str) -> str:
        """Slash-separated slug path from the root, e.g. ``hr/utveckling``."""

        department = self._by_id.get(department_id)
        if department is None:
            return ""
        chain = [self._by_id[ancestor].slug for ancestor in reversed(self.ancestors_of(department_id))]
        chain.append(department.slug)
        return "/".join(slug for slug in chain if slug)

    def expand(self, department_ids: Sequence[str]) -> list[str]:
        """Expand selected ids to include descendants, deduplicated in order.

        Ids missing from the snapshot are kept as-is so a stale tree never
        narrows a caller's filter.
        """

        expanded: list[str] = []
        seen: set[str] = set()
        for department_id in department_ids:
            for item in self.descendants_of(department_id) or [department_id]:
                if item not in seen:
                    seen.add(item)
                    expanded.append(item)
        return expanded

    def nested(self) -> list[dict[str, Any]]:
        return [self._node(root) for root in self._roots]

    def _node(self, department_id: str, seen: frozenset[str] = frozenset()) -> dict[str, Any]:
        department = self._by_id[department_id]
        seen = seen | {department_id}
        return {
            "id": department.id,
            "name": department.name,
            "slug": department.slug,
            "fullPath": department.full_path or self.full_path(department_id),
            "children": [
                self._node(child, seen) for child in self._children.get(department_id, ()) if child not in seen
            ],
        }
