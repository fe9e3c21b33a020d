from fastapi import Request

from .dispatcher import NotificationDispatcher


def get_dispatcher(request: Request) -> NotificationDispatcher:
    # Built once in main.build_app and attached to every sub-app's state
    return request.app.state.dispatcher
