"""
Top-N breakdowns over raw page views and sessions.

Each dimension maps a PageView to the value it is grouped by. Page views
without a value for the dimension (no referrer source, tracking switched
off for the site) are left out of that breakdown.
"""

from collections import Counter, defaultdict
from typing import Callable, Dict, Iterable, List, Optional, Set

from .models import PageView, Session

DEFAULT_LIMIT = 10
MAX_LIMIT = 100

DIMENSIONS: Dict[str, Callable[[PageView], Optional[str]]] = {
    "pages": lambda pv: pv.path,
    "referrers": lambda pv: pv.referrer_source,
    "devices": lambda pv: pv.device.type if pv.device else None,
    "browsers": lambda pv: pv.device.browser if pv.device else None,
    "countries": lambda pv: pv.country,
    "campaigns": lambda pv: pv.utm.campaign if pv.utm else None,
}


def top_values(pageviews: Iterable[PageView], dimension: str, limit: int = DEFAULT_LIMIT) -> List[Dict]:
    """Most viewed values of a dimension, with page views and unique visitors for each."""
    key_of = DIMENSIONS[dimension]
    views: Counter = Counter()
    visitors: Dict[str, Set[str]] = defaultdict(set)

    for pv in pageviews:
        value = key_of(pv)
        if not value:
            continue
        views[value] += 1
        visitors[value].add(pv.visitor_id)

    # Ties go to the value seen with more visitors, then alphabetically
    ranked = sorted(views, key=lambda v: (-views[v], -len(visitors[v]), v))[:limit]
    return [{"value": v, "pageViews": views[v], "visitors": len(visitors[v])} for v in ranked]


def entry_exit_pages(sessions: Iterable[Session], limit: int = DEFAULT_LIMIT) -> Dict[str, List[Dict]]:
    entries: Counter = Counter()
    exits: Counter = Counter()
    bounces: Counter = Counter()

    for session in sessions:
        entries[session.entry_path] += 1
        exits[session.exit_path] += 1
        if session.is_bounce:
            bounces[session.entry_path] += 1

    def _ranked(counter: Counter) -> List[str]:
        return sorted(counter, key=lambda path: (-counter[path], path))[:limit]

    return {
        "entryPages": [
            {
                "path": path,
                "sessions": entries[path],
                "bounceRate": round(bounces[path] / entries[path] * 100, 2),
            }
            for path in _ranked(entries)
        ],
        "exitPages": [{"path": path, "sessions": exits[path]} for path in _ranked(exits)],
    }
