"""
Scope keys for the memory graph.

Every stored entity, relation and summary belongs to exactly one
(user_id, project_id) pair. ``project_id=None`` is the general scope.
"""

from dataclasses import dataclass
from typing import Any, List, Optional


@dataclass(frozen=True)
class Scope:
    user_id: str
    project_id: Optional[str] = None

    def __post_init__(self) -> None:
        user_id = str(self.user_id or "").strip()
        if not user_id:
            raise ValueError("user_id must not be empty")
        project_id = str(self.project_id).strip() if self.project_id is not None else ""
        object.__setattr__(self, "user_id", user_id)
        object.__setattr__(self, "project_id", project_id or None)

    @property
    def lane_key(self) -> str:
        """Write-lane key; one lane per scope. NUL never appears in a header value."""
        return f"{self.user_id}\x00{self.project_id or ''}"

    @property
    def label(self) -> str:
        return f"{self.user_id}/{self.project_id or '(general)'}"

    def entity_clause(self, model: Any) -> List[Any]:
        """WHERE terms selecting entities (or summaries) in this scope."""
        terms = [model.user_id == self.user_id]
        if self.project_id is None:
            terms.append(model.project_id.is_(None))
        else:
            terms.append(model.project_id == self.project_id)
        return terms

    def relation_clause(self, relation_model: Any) -> List[Any]:
        """WHERE terms selecting relations in this scope.

        Relations carry their own scope columns, so this filters on the
        relation row itself and never on the joined endpoint entities.
        """
        terms = [relation_model.user_id == self.user_id]
        if self.project_id is None:
            terms.append(relation_model.project_id.is_(None))
        else:
            terms.append(relation_model.project_id == self.project_id)
        return terms
