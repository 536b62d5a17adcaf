"""Request-scoped access to the services built at startup."""
from fastapi import Request

from engines.selector import ExerciseSelector


def get_selector(request: Request) -> ExerciseSelector:
    return request.app.state.selector
