class EngineUnavailableError(RuntimeError):
    """The engine is not connected yet or the connection was lost. Transient."""


class EngineFatalError(RuntimeError):
    """The engine could not be started or released."""


class InvalidRequestError(ValueError):
    """A caller request was rejected at the boundary (bad route, type or count)."""
