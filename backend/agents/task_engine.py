"""
Task Engine — cooperative mini-games played between resolution and voting.

Three kinds, picked uniformly:
  sequence       — 4 digits shown shuffled; answer is the digits in ascending order
  memory         — 3 items shown in order, then offered shuffled; answer is the shown order
  hash_fragment  — a hex seed; answer is the first 8 hex chars of sha256(seed)

Validation is exact structural equality. Order matters; no partial credit.
"""
import hashlib
import logging
import random
from typing import Any, List, Optional

from models.errors import ValidationError
from models.game import Task, TaskKind

logger = logging.getLogger(__name__)

SEQUENCE_LENGTH = 4
MEMORY_ITEMS = 3
MEMORY_POOL: List[str] = [
    "apple", "banana", "cherry", "date", "elderberry",
    "fig", "grape", "honeydew", "kiwi", "lemon",
]
HASH_SEED_BYTES = 16
HASH_FRAGMENT_LENGTH = 8


class TaskEngine:

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.SystemRandom()

    def generate_task(self) -> Task:
        kind = self.rng.choice(list(TaskKind))
        logger.debug(f"Generating {kind.value} task")
        if kind == TaskKind.SEQUENCE:
            return self._sequence_task()
        if kind == TaskKind.MEMORY:
            return self._memory_task()
        return self._hash_fragment_task()

    def _shuffled(self, items: List[Any]) -> List[Any]:
        copy = list(items)
        self.rng.shuffle(copy)
        return copy

    def _sequence_task(self) -> Task:
        digits = [self.rng.randrange(10) for _ in range(SEQUENCE_LENGTH)]
        return Task(
            kind=TaskKind.SEQUENCE,
            answer=sorted(digits),
            presentation={"shuffled": self._shuffled(digits)},
        )

    def _memory_task(self) -> Task:
        items = self.rng.sample(MEMORY_POOL, MEMORY_ITEMS)
        return Task(
            kind=TaskKind.MEMORY,
            answer=items,
            presentation={"items": list(items), "choices": self._shuffled(items)},
            shown_once=["items"],
        )

    def _hash_fragment_task(self) -> Task:
        # Seed comes from the injected RNG so seeded tests stay reproducible
        seed = "%0*x" % (HASH_SEED_BYTES * 2, self.rng.getrandbits(HASH_SEED_BYTES * 8))
        digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()
        return Task(
            kind=TaskKind.HASH_FRAGMENT,
            answer=digest[:HASH_FRAGMENT_LENGTH],
            presentation={"seed": seed, "fragment_length": HASH_FRAGMENT_LENGTH},
        )

    @staticmethod
    def validate_answer(task: Task, submitted: Any) -> bool:
        """
        Exact match against the canonical answer.

        Raises ValidationError when the payload has the wrong shape for the
        task kind (list for sequence/memory, string for hash_fragment).
        """
        if task.kind == TaskKind.HASH_FRAGMENT:
            if not isinstance(submitted, str):
                raise ValidationError("hash_fragment answers must be a string")
            return submitted == task.answer
        if not isinstance(submitted, list):
            raise ValidationError(f"{task.kind.value} answers must be a list")
        return _exactly_equal(submitted, task.answer)


def _exactly_equal(left: Any, right: Any) -> bool:
    """Structural equality that also requires matching types, so 1.0 and True never pass for 1."""
    if type(left) is not type(right):
        return False
    if isinstance(left, list):
        return len(left) == len(right) and all(_exactly_equal(a, b) for a, b in zip(left, right))
    return left == right


# Module-level singleton
task_engine = TaskEngine()
