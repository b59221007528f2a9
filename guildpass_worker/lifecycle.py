from enum import Enum


class WorkerState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    DRAINING = "draining"
    STOPPED = "stopped"


class InvalidTransition(RuntimeError):
    def __init__(self, transition: str, state: WorkerState):
        super().__init__(f"Cannot {transition} while {state.value}")
        self.transition = transition
        self.state = state


class WorkerLifecycle:
    """
    Tick and shutdown state of one worker process.

    ``begin_tick`` is the overlap guard: a tick requested while another is
    polling is refused rather than queued. A shutdown requested mid-tick
    drains, and the worker stops when that tick ends.
    """

    def __init__(self):
        self.state = WorkerState.IDLE

    def begin_tick(self) -> bool:
        if self.state is not WorkerState.IDLE:
            return False
        self.state = WorkerState.POLLING
        return True

    def end_tick(self) -> None:
        if self.state is WorkerState.POLLING:
            self.state = WorkerState.IDLE
        elif self.state is WorkerState.DRAINING:
            self.state = WorkerState.STOPPED
        else:
            raise InvalidTransition("end_tick", self.state)

    def request_shutdown(self) -> None:
        if self.state is WorkerState.IDLE:
            self.state = WorkerState.STOPPED
        elif self.state is WorkerState.POLLING:
            self.state = WorkerState.DRAINING
        elif self.state in (WorkerState.DRAINING, WorkerState.STOPPED):
            # Repeated signals while shutting down
            return

    def should_continue(self) -> bool:
        return self.state in (WorkerState.IDLE, WorkerState.POLLING)

    @property
    def stopped(self) -> bool:
        return self.state is WorkerState.STOPPED
