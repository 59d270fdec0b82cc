"""Classification results and confusion matrices."""

from __future__ import annotations

import sys
from collections import defaultdict
from dataclasses import dataclass, field
from typing import DefaultDict, Dict, List, TextIO


@dataclass
class Result:
    """Success counters plus a ``predicted -> actual -> count`` matrix."""

    num_success: int = 0
    num_total: int = 0
    confusion_matrix: DefaultDict[int, DefaultDict[int, int]] = field(
        default_factory=lambda: defaultdict(lambda: defaultdict(int))
    )

    def add(self, predicted: int, actual: int) -> None:
        if predicted == actual:
            self.num_success += 1
        self.num_total += 1
        self.confusion_matrix[predicted][actual] += 1

    def accuracy(self) -> float:
        """Percentage of correct predictions; 0 when nothing was evaluated."""

        if self.num_total == 0:
            return 0.0
        return self.num_success * 100.0 / self.num_total

    def labels(self) -> List[int]:
        seen = set(self.confusion_matrix)
        for row in self.confusion_matrix.values():
            seen.update(row)
        return sorted(seen)

    def count(self, predicted: int, actual: int) -> int:
        row = self.confusion_matrix.get(predicted)
        if row is None:
            return 0
        return row.get(actual, 0)

    def print_summary(self, stream: TextIO | None = None) -> None:
        stream = stream or sys.stdout
        stream.write(
            f"accuracy:{self.accuracy():g}% ({self.num_success}/{self.num_total})\n"
        )

    def print_detail(self, stream: TextIO | None = None) -> None:
        stream = stream or sys.stdout
        self.print_summary(stream)
        labels = self.labels()
        stream.write(f"{'*':>5} " + "".join(f"{c:>5} " for c in labels) + "\n")
        for r in labels:
            cells = "".join(f"{self.count(r, c):>5} " for c in labels)
            stream.write(f"{r:>5} {cells}\n")

    def to_dict(self) -> Dict[str, object]:
        return {
            "num_success": self.num_success,
            "num_total": self.num_total,
            "accuracy": self.accuracy(),
            "confusion_matrix": {
                str(p): {str(a): n for a, n in sorted(row.items())}
                for p, row in sorted(self.confusion_matrix.items())
            },
        }


__all__ = ["Result"]
