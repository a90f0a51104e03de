import sys
from datetime import datetime, timedelta
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


class StepClock:
    """Settable clock for services that take ``clock=``."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2024, 5, 10, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_app(tmp_path: Path, capabilities=None, clock=None, name: str = "store.db"):
    from rsm.application.container import build_container

    return build_container(tmp_path / name, capabilities=capabilities, clock=clock or StepClock())
