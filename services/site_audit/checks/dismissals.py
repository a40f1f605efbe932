from typing import Iterable

from services.site_audit.crawler.extract import normalize_url
from services.site_audit.db.models import Dismissal


class DismissalFilter:
    """Tenant opt-outs keyed by (check name, normalized URL)."""

    def __init__(self, dismissals: Iterable[Dismissal] = ()):
        self._keys = {(d.check_name, normalize_url(d.url)) for d in dismissals}

    def __len__(self) -> int:
        return len(self._keys)

    def is_dismissed(self, check_name: str, url: str) -> bool:
        return (check_name, normalize_url(url)) in self._keys
