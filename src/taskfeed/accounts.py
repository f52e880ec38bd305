"""
Account directory on top of the task store.

Principals live in the ``accounts`` collection, one document per principal
(``<kind>-<name>``). Plugins use the directory to resolve the recipients
they route to.
"""
import logging
from typing import Any, Dict, List, Optional

from taskfeed_common.errors import ConflictError, DocumentNotFoundError, PrincipalNotFoundError
from taskfeed_common.models import Principal

from .store import TaskStore

logger = logging.getLogger(__name__)

PRINCIPAL_KIND = "principal"


def principal_id(kind: str, name: str) -> str:
    return f"{kind}-{name}"


class AccountDirectory:
    """Looks up and provisions principals."""

    def __init__(self, store: TaskStore, collection: str = "accounts"):
        self.store = store
        self.collection = collection

    async def find_principal(self, kind: str, name: str) -> Principal:
        """
        Resolve a principal by kind and name.

        Raises:
            PrincipalNotFoundError: If no such principal exists
        """
        try:
            doc = await self.store.get(self.collection, principal_id(kind, name))
        except DocumentNotFoundError:
            raise PrincipalNotFoundError(kind, name)
        return Principal.model_validate(doc["principal"])

    async def add_principal(
        self,
        kind: str,
        name: str,
        origin: Optional[str] = None,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> Principal:
        """
        Provision a principal, replacing an existing one of the same kind and name.

        ``origin`` defaults to ``<kind>-<name>``, the collection the principal
        owns.
        """
        principal = Principal(
            kind=kind,
            name=name,
            origin=origin or principal_id(kind, name),
            attributes=attributes or {},
        )
        doc = {
            "id": principal_id(kind, name),
            "kind": PRINCIPAL_KIND,
            "principal": principal.model_dump(by_alias=True, mode="json"),
        }
        try:
            await self.store.create(self.collection, doc)
        except ConflictError:
            current = await self.store.get(self.collection, doc["id"])
            doc["revision"] = current.get("revision")
            await self.store.update(self.collection, doc)
            logger.debug(f"Updated principal {kind}/{name}")
        else:
            logger.info(f"Added principal {kind}/{name}")
        return principal

    async def list_principals(self, kind: Optional[str] = None) -> List[Principal]:
        principals = [
            Principal.model_validate(doc["principal"])
            for doc in await self.store.list_documents(self.collection)
            if doc.get("kind") == PRINCIPAL_KIND
        ]
        if kind is not None:
            principals = [p for p in principals if p.kind == kind]
        return principals
