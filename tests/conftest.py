import itertools
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

import convergence
import extractor
from errors import EvaluationError


class FakeSession:
    """Stands in for `RenderingSession`: answers the known page scripts from
    Python callables and records every call."""

    def __init__(
        self,
        sample: Callable[[int], Tuple[int, int]] = lambda i: (10, 1000),
        affordance: Optional[Callable[[bool], bool]] = None,
        cells: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        self.sample = sample
        self.affordance = affordance or (lambda activate: False)
        self.cells = cells or []
        self.sample_calls = 0
        self.scripts: List[str] = []
        self.sleeps: List[float] = []
        self.navigated: List[str] = []
        self.viewports: List[Tuple[int, int]] = []
        self.affordance_args: List[Dict[str, Any]] = []

    async def navigate(self, url: str, ready_selector: str = "body") -> None:
        self.navigated.append(url)

    async def set_viewport(self, width: int, height: int) -> bool:
        self.viewports.append((width, height))
        return True

    async def wait_for(self, selector: str, timeout_ms: int = 10000) -> bool:
        return True

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    async def evaluate(self, script: str, arg: Optional[Any] = None) -> Any:
        self.scripts.append(script)
        if script is convergence.SAMPLE_SCRIPT:
            i = self.sample_calls
            self.sample_calls += 1
            count, height = self.sample(i)
            return {"count": count, "height": height}
        if script is convergence.AFFORDANCE_SCRIPT:
            self.affordance_args.append(arg)
            return self.affordance(arg["activate"])
        if script is extractor.SNAPSHOT_SCRIPT:
            return json.dumps(self.cells)
        return None


def raise_evaluation_error(*_: Any) -> Any:
    raise EvaluationError("Execution context was destroyed")


def probes(*answers: bool) -> Callable[[bool], bool]:
    """Affordance callable: clicks never find a button; successive presence
    probes return `answers`, then False."""
    it = itertools.chain(answers, itertools.repeat(False))

    def answer(activate: bool) -> bool:
        return False if activate else next(it)

    return answer


@pytest.fixture
def fake_session_cls():
    return FakeSession


@pytest.fixture
def cell():
    def make(**fields: Any) -> Dict[str, Any]:
        base: Dict[str, Any] = {
            "index": 0,
            "signals": {"isGridItem": True},
            "amounts": [],
            "contractGrade": False,
            "text": "",
        }
        base.update(fields)
        return base

    return make


@pytest.fixture
def affordance_probes():
    return probes


@pytest.fixture
def failing():
    return raise_evaluation_error
