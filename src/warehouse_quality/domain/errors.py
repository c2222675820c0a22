class QualityError(Exception):
    pass


class ConfigurationError(QualityError):
    """Malformed catalog or runtime configuration. Raised before any data is read."""


class DataAccessError(QualityError):
    def __init__(self, dataset: str, message: str) -> None:
        super().__init__(f"cannot read dataset '{dataset}': {message}")
        self.dataset = dataset


class EvaluationError(QualityError):
    def __init__(self, rule_id: str, message: str) -> None:
        super().__init__(f"rule '{rule_id}': {message}")
        self.rule_id = rule_id


class RunCancelled(QualityError):
    pass


class RunTimeoutError(RunCancelled, TimeoutError):
    pass
