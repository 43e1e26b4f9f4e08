# Copyright (c) 2025 Trae AI. All rights reserved.

from typing import Optional, Tuple
from .errors import UnknownItemError
from .models import Collection, LibrarySnapshot

DEFAULT_NAME = "Untitled Collection"


def _clean_name(name: Optional[str]) -> str:
    name = str(name or "").strip()
    return name or DEFAULT_NAME


def _find(snap: LibrarySnapshot, collection_id: int) -> Collection:
    collection = snap.collections.get(collection_id)
    if collection is None:
        raise UnknownItemError(f"collection {collection_id}")
    return collection


def create_collection(snapshot: LibrarySnapshot, name: Optional[str] = None) -> Tuple[LibrarySnapshot, Collection]:
    snap = snapshot.model_copy(deep=True)
    collection = Collection(id=snap.next_collection_id, name=_clean_name(name))
    snap.next_collection_id += 1
    snap.collections[collection.id] = collection
    return snap, collection


def rename_collection(snapshot: LibrarySnapshot, collection_id: int,
                      name: Optional[str]) -> Tuple[LibrarySnapshot, Collection]:
    snap = snapshot.model_copy(deep=True)
    collection = _find(snap, collection_id)
    collection.name = _clean_name(name)
    return snap, collection


def delete_collection(snapshot: LibrarySnapshot, collection_id: int) -> Tuple[LibrarySnapshot, Collection]:
    snap = snapshot.model_copy(deep=True)
    collection = _find(snap, collection_id)
    del snap.collections[collection_id]
    return snap, collection


def add_to_collection(snapshot: LibrarySnapshot, collection_id: int,
                      item_id: int) -> Tuple[LibrarySnapshot, bool]:
    """
    Appends an item. Adding an item that is already a member changes nothing
    and returns False.
    """
    snap = snapshot.model_copy(deep=True)
    collection = _find(snap, collection_id)
    if item_id not in snap.items:
        raise UnknownItemError(item_id)
    if item_id in collection.item_ids:
        return snap, False
    collection.item_ids.append(item_id)
    return snap, True


def remove_from_collection(snapshot: LibrarySnapshot, collection_id: int,
                           item_id: int) -> Tuple[LibrarySnapshot, bool]:
    snap = snapshot.model_copy(deep=True)
    collection = _find(snap, collection_id)
    if item_id not in collection.item_ids:
        return snap, False
    collection.item_ids.remove(item_id)
    return snap, True
