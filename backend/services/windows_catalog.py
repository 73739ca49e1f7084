"""
Lookup of installable Windows images by slug.
"""

from typing import Optional

from backend.persistence.models import WindowsVersion


class WindowsCatalog:
    """Read-only view over the active rows of ``windows_versions``."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def get(self, slug: str) -> Optional[WindowsVersion]:
        if not slug:
            return None
        db = self.session_factory()
        try:
            return (
                db.query(WindowsVersion)
                .filter(WindowsVersion.slug == slug, WindowsVersion.is_active.is_(True))
                .first()
            )
        finally:
            db.close()

    def lookup(self, slug: str) -> bool:
        return self.get(slug) is not None
