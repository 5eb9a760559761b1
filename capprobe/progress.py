from __future__ import annotations

from typing import Callable, Optional, Sequence

from tqdm import tqdm


class StageProgress:
    """
    Single tqdm bar over a fixed list of named stages.

    The reporter runs its steps strictly in order, so the bar only ever moves
    forward: `set_stage()` with an earlier (or unknown) stage just refreshes
    the postfix. Disabled bars cost nothing, which keeps tests quiet.
    """

    def __init__(
        self,
        *,
        stages: Sequence[str],
        desc: str,
        unit: str = "step",
        enabled: bool = True,
        tqdm_factory: Optional[Callable] = None,
    ) -> None:
        self._stages = list(stages)
        self._stage_to_index = {name: i for i, name in enumerate(self._stages)}
        self._current = -1
        factory = tqdm_factory or tqdm
        self._tqdm = factory(total=len(self._stages), desc=desc, unit=unit, leave=False) if enabled else None

    @property
    def current(self) -> Optional[str]:
        if self._current < 0:
            return None
        return self._stages[self._current]

    def set_stage(self, stage: str) -> None:
        new_idx = self._stage_to_index.get(stage, self._current)
        if new_idx > self._current:
            if self._tqdm is not None:
                # The bar counts completed stages; entering stage N means N-1 are done.
                self._tqdm.update(max(0, new_idx - max(self._current, 0)))
            self._current = new_idx
        if self._tqdm is not None:
            self._tqdm.set_postfix_str(stage, refresh=True)

    def finish(self) -> None:
        if self._tqdm is not None:
            self._tqdm.update(self._tqdm.total - self._tqdm.n)
        self._current = len(self._stages) - 1

    def close(self) -> None:
        if self._tqdm is not None:
            self._tqdm.close()
            self._tqdm = None
