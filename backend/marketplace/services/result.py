"""
业务操作结果

状态变更类操作统一返回 Ok(value) 或 Err(kind, message)，
由 API 层按 ErrorKind 映射为 HTTP 状态码。
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar, Union

T = TypeVar("T")


class ErrorKind(str, Enum):
    NOT_FOUND = "NotFound"
    UNAUTHORIZED = "Unauthorized"
    INVALID_STATE = "InvalidState"
    VALIDATION = "ValidationError"
    DEPENDENCY_FAILURE = "DependencyFailure"
    CONFLICT = "Conflict"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]


class ReturnRequestError(ValueError):
    """创建售后单失败（不满足条件或参数非法）"""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.VALIDATION):
        super().__init__(message)
        self.kind = kind


def not_found(message: str = "售后单不存在") -> Err:
    return Err(ErrorKind.NOT_FOUND, message)


def unauthorized(message: str) -> Err:
    return Err(ErrorKind.UNAUTHORIZED, message)


def invalid_state(message: str) -> Err:
    return Err(ErrorKind.INVALID_STATE, message)


def validation_error(message: str) -> Err:
    return Err(ErrorKind.VALIDATION, message)


def conflict(message: Optional[str] = None) -> Err:
    return Err(ErrorKind.CONFLICT, message or "售后单已被其他操作修改，请刷新后重试")
