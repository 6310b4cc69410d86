class ParleyError(Exception):
    pass


class DeviceUnavailable(ParleyError):
    def __init__(self, device: str, detail: str = "") -> None:
        self.device = device
        self.detail = detail
        message = f"{device} unavailable"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class BackendError(ParleyError):
    pass


class BackendUnreachable(BackendError):
    pass


class BackendBadStatus(BackendError):
    def __init__(self, status_code: int, detail: str = "") -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Backend returned HTTP {status_code}" + (f": {detail}" if detail else ""))


class BackendDecodeFailure(BackendError):
    pass


class EmptyCommand(ParleyError):
    def __init__(self) -> None:
        super().__init__("Command is empty")


class RequestInFlight(ParleyError):
    def __init__(self, thread_id: str | None = None) -> None:
        self.thread_id = thread_id
        if thread_id is None:
            super().__init__("A request is still in flight")
        else:
            super().__init__(f"A request for thread {thread_id} is still in flight")
