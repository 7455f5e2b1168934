"""
Events — stage transitions sent from pipeline workers to the reporter.

Workers only ever put events on the queue; they never wait for the
reporter.  The driver puts ``END_OF_STREAM`` once every worker has joined.
"""
import queue
from dataclasses import dataclass
from enum import Enum, unique
from typing import Optional


@unique
class Stage(str, Enum):
    REWRITE = "rewrite"
    COMPILE = "compile"
    LINK = "link"
    SKIP = "skip"
    ERROR = "error"


_LABEL_SUFFIX = {
    Stage.REWRITE: "",
    Stage.COMPILE: "(llc)",
    Stage.LINK: "(bin)",
}


@dataclass(frozen=True)
class StageEvent:
    """``finished`` is False when a stage starts, True when it ends."""

    unit: str
    stage: Stage
    finished: bool = False
    message: Optional[str] = None
    announce: bool = True

    @property
    def label(self) -> str:
        return f"{self.unit}{_LABEL_SUFFIX.get(self.stage, '')}"


END_OF_STREAM = None


class EventSink:
    """Producer handle on the reporter's queue."""

    def __init__(self, channel: Optional["queue.Queue[Optional[StageEvent]]"] = None):
        self.channel = channel if channel is not None else queue.Queue()

    def start(self, unit: str, stage: Stage) -> None:
        self.channel.put(StageEvent(unit, stage))

    def finish(self, unit: str, stage: Stage) -> None:
        self.channel.put(StageEvent(unit, stage, finished=True))

    def skipped(self, unit: str, announce: bool = True) -> None:
        self.channel.put(StageEvent(unit, Stage.SKIP, finished=True, announce=announce))

    def error(self, unit: str, message: str) -> None:
        self.channel.put(StageEvent(unit, Stage.ERROR, finished=True, message=message))

    def close(self) -> None:
        self.channel.put(END_OF_STREAM)
