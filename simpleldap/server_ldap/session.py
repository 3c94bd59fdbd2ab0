from __future__ import annotations

ANONYMOUS = "Anonymous"


class Session:
    """
    Authentication state of one client connection
    """

    __slots__ = ("dn", "may_search")

    def __init__(self) -> None:
        self.dn = ANONYMOUS
        self.may_search = False

    def bind_as(self, dn: str, may_search: bool) -> None:
        self.dn = dn
        self.may_search = may_search

    def may_see(self, dn: str) -> bool:
        return self.may_search or self.dn == dn

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__} dn={self.dn!r} "
            f"may_search={self.may_search}>"
        )
