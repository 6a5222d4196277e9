"""
Database access for the Digital Life Lessons API

A single MongoClient is created on first use and shared by every request
(pymongo clients are thread-safe and pool their own connections). Route
handlers never touch the client directly: they receive the database through
the ``get_db`` dependency so tests can swap in a substitute store.
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pymongo import MongoClient
from pymongo.database import Database

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "digital_life_lessons_db")
DB_TIMEOUT_MS = int(os.getenv("DB_TIMEOUT_MS", "5000"))

_client: Optional[MongoClient] = None


def get_client() -> MongoClient:
    global _client
    if _client is None:
        _client = MongoClient(
            DATABASE_URL,
            serverSelectionTimeoutMS=DB_TIMEOUT_MS,
            connectTimeoutMS=DB_TIMEOUT_MS,
            socketTimeoutMS=DB_TIMEOUT_MS,
            tz_aware=True,
        )
    return _client


def get_db() -> Database:
    return get_client()[DATABASE_NAME]


def create_document(db: Database, collection_name: str, data: Dict[str, Any]) -> str:
    """Insert a document stamped with createdAt and return its id as a string."""
    doc = {**data, "createdAt": datetime.now(timezone.utc)}
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    db: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
) -> List[Dict[str, Any]]:
    """Documents matching filter_dict, newest first."""
    return list(db[collection_name].find(filter_dict or {}).sort("createdAt", -1))
