from fastapi import Header
from starlette.requests import HTTPConnection
from app.core.controller import ExecutionController


def get_controller(conn: HTTPConnection) -> ExecutionController:
    return conn.app.state.controller


def get_actor(x_user_id: str = Header("anonymous")) -> str:
    return x_user_id
