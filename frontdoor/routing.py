from collections.abc import Sequence

from .config import RouteRule

# Basic prefix matching, first rule wins

def find_route(routes: Sequence[RouteRule], path: str) -> tuple[RouteRule | None, str | None]:
    for rule in routes:
        if path.startswith(rule.prefix):
            if rule.strip_prefix:
                suffix = path[len(rule.prefix):]
                if not suffix.startswith('/'):
                    suffix = '/' + suffix
            else:
                suffix = path
            return rule, suffix
    return None, None
