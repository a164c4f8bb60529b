"""
Run and instance ID generation utilities.
"""

import random
import string
from datetime import datetime


def _random_suffix(k: int) -> str:
    return ''.join(random.choices(string.ascii_lowercase + string.digits, k=k))


def new_run_id() -> str:
    """
    Generate a new reconciliation run ID in format: r-YYYYMMDD-hhmmss-XXXX
    
    Returns:
        str: Unique run ID
    """
    now = datetime.now()
    date_str = now.strftime("%Y%m%d")
    time_str = now.strftime("%H%M%S")
    
    return f"r-{date_str}-{time_str}-{_random_suffix(4)}"


def is_valid_run_id(run_id: str) -> bool:
    """
    Validate run ID format.
    
    Args:
        run_id: ID to validate
        
    Returns:
        bool: True if valid format
    """
    if not run_id.startswith("r-"):
        return False
    
    parts = run_id.split("-")
    if len(parts) != 4:
        return False
    
    # Check date format (YYYYMMDD)
    if len(parts[1]) != 8 or not parts[1].isdigit():
        return False
    
    # Check time format (HHMMSS)
    if len(parts[2]) != 6 or not parts[2].isdigit():
        return False
    
    # Check random suffix (4 alphanumeric)
    if len(parts[3]) != 4:
        return False
    
    return True


def new_physical_id(prefix: str) -> str:
    """Generate a provider-style physical ID such as ``sg-0a1b2c3d4e5f6a7b8``."""
    return f"{prefix}-{''.join(random.choices('0123456789abcdef', k=17))}"


def is_valid_stack_name(name: str) -> bool:
    """Stack names become directory names, so keep them to [a-z0-9-]."""
    if not name or len(name) > 32:
        return False
    if name.startswith("-") or name.endswith("-"):
        return False
    allowed = set(string.ascii_lowercase + string.digits + "-")
    return all(ch in allowed for ch in name)
