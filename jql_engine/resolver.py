"""
Resolution of JQL project names to permitted index names.
"""

from typing import Dict, Iterable, List, Optional


WILDCARD = '*'


def is_index_allowed(index: str, allowed: Iterable[str]) -> bool:
    """Check an index name against an allow-list.

    Entries ending in '*' match by prefix; all others require equality.
    """
    for pattern in allowed:
        if pattern.endswith(WILDCARD):
            if index.startswith(pattern[:-1]):
                return True
        elif index == pattern:
            return True
    return False


def resolve_indexes(
    projects: Iterable[str],
    allowed: List[str],
    project_index_map: Optional[Dict[str, str]] = None,
) -> List[str]:
    """Map project names to concrete index names within the allow-list.

    Args:
        projects: Project names from the parsed query
        allowed: Allow-list of index names and wildcard patterns
        project_index_map: Lowercase project name to index name

    Returns:
        The whole allow-list when no project is given; otherwise the
        mapped index names that pass the allow-list, in request order.
        Names failing the allow-list are dropped without error.
    """
    projects = list(projects)
    if not projects:
        return list(allowed)

    mapping = project_index_map or {}
    requested = [mapping.get(project.lower(), project) for project in projects]

    return [index for index in requested if is_index_allowed(index, allowed)]


def parse_project_mapping(raw: Optional[str]) -> Dict[str, str]:
    """Parse 'project:index,project2:index2' into a lookup table.

    Pairs missing either side are ignored; project keys are lowercased.
    """
    mapping: Dict[str, str] = {}
    if not raw:
        return mapping

    for pair in raw.split(','):
        project, _, index = pair.strip().partition(':')
        project = project.strip()
        index = index.strip()
        if project and index:
            mapping[project.lower()] = index

    return mapping
