"""
Validation utilities for user-supplied parameter values.
"""

from typing import Union, Tuple, Optional
import numpy as np


def is_real_bounded(
    value: Union[float, int, str],
    lower: float,
    upper: float,
    include_lower: bool = True,
    include_upper: bool = True,
) -> Tuple[bool, Optional[float], str]:
    """
    Check if value is a real number within bounds.

    Args:
        value: Value to check (can be string for user input)
        lower: Lower bound
        upper: Upper bound (np.inf for none)
        include_lower: Include lower bound (>=) vs (>)
        include_upper: Include upper bound (<=) vs (<)

    Returns:
        Tuple of (is_valid, parsed_value, error_message)
    """
    if isinstance(value, bool):
        return False, None, f"Value must be a number, got {value}"

    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return False, None, f"'{value}' is not a valid number"

    if not isinstance(value, (int, float, np.integer, np.floating)):
        return False, None, f"Value must be a number, got {type(value).__name__}"

    if not np.isfinite(value):
        return False, None, f"Value must be finite, got {value}"

    if include_lower:
        if value < lower:
            return False, None, f"Value {value} < {lower} (minimum)"
    else:
        if value <= lower:
            return False, None, f"Value {value} <= {lower} (must be greater)"

    if include_upper:
        if value > upper:
            return False, None, f"Value {value} > {upper} (maximum)"
    else:
        if value >= upper:
            return False, None, f"Value {value} >= {upper} (must be less)"

    return True, float(value), ""


def is_int_bounded(
    value: Union[int, float, str],
    lower: int,
    upper: Union[int, float],
    include_lower: bool = True,
    include_upper: bool = True,
) -> Tuple[bool, Optional[int], str]:
    """
    Check if value is an integer within bounds.

    Args:
        value: Value to check
        lower: Lower bound
        upper: Upper bound (np.inf for none)
        include_lower: Include lower bound
        include_upper: Include upper bound

    Returns:
        Tuple of (is_valid, parsed_value, error_message)
    """
    if isinstance(value, bool):
        return False, None, f"Value must be an integer, got {value}"

    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return False, None, f"'{value}' is not a valid integer"

    if isinstance(value, (float, np.floating)):
        if not float(value).is_integer():
            return False, None, f"Value {value} is not an integer"
        value = int(value)

    if not isinstance(value, (int, np.integer)):
        return False, None, f"Value must be an integer, got {type(value).__name__}"

    if include_lower:
        if value < lower:
            return False, None, f"Value {value} < {lower} (minimum)"
    else:
        if value <= lower:
            return False, None, f"Value {value} <= {lower} (must be greater)"

    if include_upper:
        if value > upper:
            return False, None, f"Value {value} > {upper} (maximum)"
    else:
        if value >= upper:
            return False, None, f"Value {value} >= {upper} (must be less)"

    return True, int(value), ""


def validate_demons_parameters(params: dict) -> Tuple[bool, str]:
    """
    Validate a demons parameter dictionary (for example read from JSON).

    Keys that are missing fall back to their defaults and are not checked.

    Args:
        params: Parameter dictionary

    Returns:
        Tuple of (is_valid, error_message)
    """
    int_checks = {
        "number_of_iterations": (1, np.inf),
        "number_of_threads": (1, 1024),
    }
    for key, (lower, upper) in int_checks.items():
        if key in params:
            valid, _, msg = is_int_bounded(params[key], lower, upper)
            if not valid:
                return False, f"Invalid {key}: {msg}"

    # strictly positive reals
    for key in ("intensity_difference_threshold", "time_step"):
        if key in params:
            valid, _, msg = is_real_bounded(params[key], 0, np.inf, include_lower=False)
            if not valid:
                return False, f"Invalid {key}: {msg}"

    # non-negative reals
    for key in ("maximum_step_length", "standard_deviations", "update_field_standard_deviations"):
        if key in params:
            valid, _, msg = is_real_bounded(params[key], 0, np.inf)
            if not valid:
                return False, f"Invalid {key}: {msg}"

    for key in ("use_moving_image_gradient", "smooth_deformation_field", "smooth_update_field"):
        if key in params and not isinstance(params[key], bool):
            return False, f"Invalid {key}: expected true or false, got {params[key]!r}"

    return True, ""
