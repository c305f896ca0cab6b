"""
Table selection for partial backups.
"""

from typing import Iterable, List, Optional


def has_filter(include: Optional[Iterable[str]] = None, exclude: Optional[Iterable[str]] = None) -> bool:
    """Return True if the caller asked for an explicit table selection."""
    return bool(include) or bool(exclude)


def resolve_tables(
    all_tables: List[str],
    include: Optional[Iterable[str]] = None,
    exclude: Optional[Iterable[str]] = None
) -> List[str]:
    """
    Resolve the tables to back up.

    The include list wins when both lists are given. Names that do not exist
    in the database are dropped without error.

    Args:
        all_tables: Every table in the database, in database order
        include: Tables to keep (optional)
        exclude: Tables to drop (optional)

    Returns:
        Selected table names, in the order of ``all_tables``
    """
    if include:
        wanted = set(include)
        return [table for table in all_tables if table in wanted]

    if exclude:
        unwanted = set(exclude)
        return [table for table in all_tables if table not in unwanted]

    return list(all_tables)
