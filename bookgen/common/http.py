from typing import Any, Dict, Optional

from quart import current_app, request

from .errors import ValidationError


async def read_json() -> Dict[str, Any]:
    data = await request.get_json(force=True, silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def str_field(data: Dict[str, Any], name: str, required: bool = True) -> Optional[str]:
    value = data.get(name)
    if value is None or value == "":
        if required:
            raise ValidationError(f"{name} is required")
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    return value


def dict_field(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = data.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(f"{name} must be an object")
    return value


def int_arg(value: Any, name: str, default: Optional[int] = None) -> Optional[int]:
    if value is None or value == "":
        if default is None:
            raise ValidationError(f"{name} is required")
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")


def extension(name: str):
    """Shared service object (store, provider, monitor) hung on the app."""
    return current_app.extensions[name]
