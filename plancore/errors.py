class PlancoreError(Exception):
    pass


class ConfigurationError(PlancoreError):
    """Raised before any plan work when the runtime is not usable (e.g. no model configured)."""


class ReasonerError(PlancoreError):
    pass


class ToolExecutionError(PlancoreError):
    def __init__(self, message: str, *, tool_name: str = "", code: int | None = None) -> None:
        super().__init__(message)
        self.tool_name = tool_name
        self.code = code


class PlanStructureError(PlancoreError):
    pass


class PlanRejectedError(PlancoreError):
    def __init__(self, message: str, *, plan_id: str = "") -> None:
        super().__init__(message)
        self.plan_id = plan_id
