"""
Discipline rubrics shared by every scoring call site.

Each rubric carries the dimension weights used for the overall score and the
critical dimensions that decide whether a document yields usable claims.
"""

from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

DEFAULT_DISCIPLINE = "default"
VIEWPOINT_DIMENSION = "观点"
REASONING_KEY = "_reasoning"


@dataclass(frozen=True)
class Rubric:
    discipline: str
    weights: Mapping[str, float]
    critical_dimensions: Tuple[str, ...]

    def weight(self, dimension: str) -> float:
        return self.weights.get(dimension, 0.0)


RUBRICS: Dict[str, Rubric] = {
    DEFAULT_DISCIPLINE: Rubric(
        discipline=DEFAULT_DISCIPLINE,
        weights={"结构": 0.2, "逻辑": 0.25, "观点": 0.25, "证据": 0.2, "引用": 0.1},
        critical_dimensions=("观点", "逻辑", "证据"),
    ),
    "哲学": Rubric(
        discipline="哲学",
        weights={"结构": 0.15, "逻辑": 0.3, "观点": 0.3, "论证": 0.15, "引用": 0.1},
        critical_dimensions=("观点", "逻辑", "论证"),
    ),
    "文学": Rubric(
        discipline="文学",
        weights={"结构": 0.2, "表达": 0.3, "观点": 0.25, "材料": 0.15, "引用": 0.1},
        critical_dimensions=("观点", "表达", "材料"),
    ),
    "历史": Rubric(
        discipline="历史",
        weights={"结构": 0.15, "逻辑": 0.2, "观点": 0.25, "史料": 0.3, "引用": 0.1},
        critical_dimensions=("观点", "逻辑", "史料"),
    ),
    "科学": Rubric(
        discipline="科学",
        weights={"结构": 0.15, "逻辑": 0.25, "观点": 0.2, "数据": 0.3, "引用": 0.1},
        critical_dimensions=("观点", "逻辑", "数据"),
    ),
}


def get_rubric(discipline: Optional[str] = None) -> Rubric:
    """Rubric for a discipline; unknown or missing disciplines use the default."""
    if not discipline:
        return RUBRICS[DEFAULT_DISCIPLINE]
    return RUBRICS.get(discipline.strip(), RUBRICS[DEFAULT_DISCIPLINE])
