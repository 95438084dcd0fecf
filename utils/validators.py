"""
Input validation utilities.
Validates user prompts and retrieval parameters.
"""

import logging
import re
from typing import Optional, Tuple

logger = logging.getLogger(__name__)


def validate_query(query: str, min_length: int = 1, max_length: int = 5000) -> Tuple[bool, Optional[str]]:
    """
    Validate a user prompt.

    Args:
        query: User prompt string
        min_length: Minimum prompt length
        max_length: Maximum prompt length

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not query or not query.strip():
        return False, "Query cannot be empty"

    if len(query.strip()) < min_length:
        return False, f"Query too short (minimum {min_length} characters)"

    if len(query) > max_length:
        return False, f"Query too long (maximum {max_length} characters)"

    # Control characters other than tab, LF and CR
    if re.search(r'[\x00-\x08\x0b\x0c\x0e-\x1f]', query):
        logger.warning("Control characters detected in query")
        return False, "Query contains invalid content"

    return True, None


def validate_top_k(top_k: int, min_k: int = 1, max_k: int = 50) -> Tuple[bool, Optional[str]]:
    """
    Validate top_k parameter.

    Args:
        top_k: Top-K value to validate
        min_k: Minimum allowed value
        max_k: Maximum allowed value

    Returns:
        Tuple of (is_valid, error_message)
    """
    if top_k < min_k:
        return False, f"Top-K too small (minimum {min_k})"

    if top_k > max_k:
        return False, f"Top-K too large (maximum {max_k})"

    return True, None

