from functools import wraps
from typing import Callable, TypeVar

from kubernetes.client.rest import ApiException
from pydantic.fields import FieldInfo

from utils.api_error import ClusterApiError

T = TypeVar("T")


def handle_api_exception(func: Callable[..., T]) -> Callable[..., T]:
    """
    装饰器：将 Kubernetes SDK 的 ApiException 转换为 ClusterApiError

    Args:
        func: 被装饰的函数

    Returns:
        装饰后的函数，ApiException 会携带可读的错误信息与处理建议重新抛出
    """

    @wraps(func)
    def wrapper(*args, **kwargs) -> T:
        try:
            return func(*args, **kwargs)
        except ApiException as e:
            raise ClusterApiError.from_api_exception(e) from e

    return wrapper


def unwrap_field(value, default=None):
    """直接调用工具方法时，未传入的参数仍是 pydantic FieldInfo，此时返回默认值。"""
    if isinstance(value, FieldInfo):
        return default
    return value
