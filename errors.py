from __future__ import annotations

from typing import Optional

# Author: Daniel Neugent


class AppError(Exception):
    """Base class for failures that map onto a fixed HTTP status and message."""

    status_code = 500
    public_message = "Wystąpił wewnętrzny błąd serwera."

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.public_message)
        self.message = message or self.public_message


class InvalidInput(AppError):
    status_code = 400
    public_message = "Nieprawidłowe dane formularza."


class Unauthorized(AppError):
    status_code = 401
    public_message = "Brak autoryzacji. Musisz być zalogowany."


class AuthFailure(Unauthorized):
    """Raised for every failed login, whatever the cause."""

    public_message = "Nieprawidłowe dane logowania."

    def __init__(self) -> None:
        super().__init__(self.public_message)


class NotFound(AppError):
    status_code = 404
    public_message = "Nie znaleziono zasobu."


class Conflict(AppError):
    status_code = 409
    public_message = "Ta nazwa użytkownika jest już zajęta."


class InternalError(AppError):
    status_code = 500
