"""
Mocks de Motor para tests de servicios sin MongoDB
"""

from unittest.mock import AsyncMock, MagicMock

from bson import ObjectId

COLLECTIONS = (
    "users", "plans", "brands", "memberships", "invites", "credit_transactions",
    "analyses", "analysis_statuses", "analysis_pairs", "cron_locks",
)


def make_cursor(docs=None):
    """Cursor encadenable: find().sort().skip().limit().to_list()"""
    cursor = MagicMock()
    cursor.sort.return_value = cursor
    cursor.skip.return_value = cursor
    cursor.limit.return_value = cursor
    cursor.to_list = AsyncMock(return_value=list(docs or []))
    return cursor


def make_collection():
    collection = MagicMock()
    collection.find_one = AsyncMock(return_value=None)
    collection.insert_one = AsyncMock(side_effect=lambda doc, **kwargs: MagicMock(inserted_id=ObjectId()))
    collection.update_one = AsyncMock(return_value=MagicMock(modified_count=1, matched_count=1))
    collection.update_many = AsyncMock(return_value=MagicMock(modified_count=0))
    collection.find_one_and_update = AsyncMock(return_value=None)
    collection.find_one_and_delete = AsyncMock(return_value=None)
    collection.delete_one = AsyncMock(return_value=MagicMock(deleted_count=1))
    collection.count_documents = AsyncMock(return_value=0)
    collection.bulk_write = AsyncMock(return_value=MagicMock(upserted_count=0))
    collection.distinct = AsyncMock(return_value=[])
    collection.find = MagicMock(return_value=make_cursor())
    collection.aggregate = MagicMock(return_value=make_cursor())
    return collection


def make_session():
    """Sesión con transacción que ejecuta el callback en el mismo loop"""
    session = MagicMock()
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=False)

    async def run(callback, *args, **kwargs):
        return await callback(session)

    session.with_transaction = AsyncMock(side_effect=run)
    return session


def make_db_manager():
    db_manager = MagicMock()
    for name in COLLECTIONS:
        setattr(db_manager, name, make_collection())
    db_manager.session = make_session()
    db_manager.start_session = AsyncMock(return_value=db_manager.session)
    return db_manager
