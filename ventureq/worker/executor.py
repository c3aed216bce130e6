"""Job executor: runs a handler and turns its outcome into a tagged result"""

import traceback
from dataclasses import dataclass
from typing import Any, Callable, Union

from ventureq.exceptions import HandlerExecutionError
from ventureq.models import Job


@dataclass(frozen=True)
class Success:
    value: Any = None


@dataclass(frozen=True)
class Failure:
    error: str
    detail: str = ""


HandlerOutcome = Union[Success, Failure]
Handler = Callable[[Job], Any]


class JobExecutor:
    """Executes job handlers; handler errors never escape execute()"""

    def execute(self, handler: Handler, job: Job) -> HandlerOutcome:
        """
        Run handler(job) and return Success or Failure.

        A handler may return a Success/Failure itself; any other return
        value is wrapped in Success, and any exception becomes Failure.
        """
        try:
            outcome = handler(job)
        except HandlerExecutionError as e:
            return Failure(error=str(e))
        except Exception as e:
            return Failure(error=f"{type(e).__name__}: {e}", detail=traceback.format_exc())

        if isinstance(outcome, (Success, Failure)):
            return outcome
        return Success(value=outcome)
