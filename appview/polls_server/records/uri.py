"""
at:// resource identifiers.

A record URI names one record in one repository:
    at://<did>/<collection>/<rkey>
"""

from __future__ import annotations

from dataclasses import dataclass

AT_SCHEME = "at://"


@dataclass(frozen=True)
class AtUri:
    """Parsed record URI.

    Attributes:
        did: Repository owner
        collection: Collection NSID
        rkey: Record key
    """

    did: str
    collection: str
    rkey: str

    @classmethod
    def parse(cls, uri: str) -> AtUri:
        """Parse a record URI.

        Raises:
            ValueError: If the URI does not name a single record
        """
        if not uri.startswith(AT_SCHEME):
            raise ValueError(f"Not an at:// URI: {uri}")
        parts = uri[len(AT_SCHEME):].split("/")
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"URI does not name a record: {uri}")
        return cls(did=parts[0], collection=parts[1], rkey=parts[2])

    def __str__(self) -> str:
        return f"{AT_SCHEME}{self.did}/{self.collection}/{self.rkey}"
