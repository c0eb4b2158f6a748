"""Common error and validation utility functions
"""

import os
from typing import Callable, Optional, TypeVar, Union

N = TypeVar("N", int, float)


def check_for_missing_env_vars(env_vars: dict):
    """Checks whether any required environment values are undefined.

    :param env_vars: The dictionary of environment variables.
    """
    # Check for missing environment variables since these are unrecoverable.
    missing_keys = [k for k, v in env_vars.items() if v is None]
    if missing_keys:
        missing_keys_str = ", ".join(missing_keys)
        raise EnvironmentError(
            f"Missing required environment variables: {missing_keys_str}"
        )


def get_number_env_var(
    name: str, default: Optional[N], cast: Callable[[str], N] = int
) -> Union[N, None]:
    """Reads a numeric environment variable.

    :param name: The environment variable name.
    :param default: The value used when the variable is unset or empty.
    :param cast: The conversion applied to the variable value.
    :return: The converted value or the default.
    """
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return cast(value.strip())
    except ValueError as e:
        raise EnvironmentError(
            f"Environment variable {name} must be a number, got {value!r}"
        ) from e
