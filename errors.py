class GameError(Exception):
    """Ошибка игрового действия. Текст показывается пользователю как есть."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ValidationError(GameError):
    pass


class InsufficientResourceError(GameError):
    pass


class StateConflictError(GameError):
    pass


class NotFoundError(GameError):
    pass


class TransportError(Exception):
    """Не удалось доставить сообщение пользователю.

    permanent=True означает, что повторять отправку бессмысленно
    (бот заблокирован, чат не найден).
    """

    def __init__(self, message: str, permanent: bool = False):
        super().__init__(message)
        self.permanent = permanent


class SchedulerJobError(Exception):
    def __init__(self, job_name: str, cause: BaseException):
        super().__init__(f"{job_name}: {cause!r}")
        self.job_name = job_name
        self.cause = cause
