"""Prefixed random identifiers (``mem_``, ``rel_``, ``task_``, ``sched_``)."""
import secrets


def generate_id(prefix: str, length: int = 16) -> str:
    """``<prefix>_<length hex chars>``; ``length`` is rounded up to an even number of characters."""
    if not prefix or not prefix.isidentifier():
        raise ValueError(f"invalid id prefix: {prefix!r}")
    return f"{prefix}_{secrets.token_hex((length + 1) // 2)[:length]}"
