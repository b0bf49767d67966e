from sqlalchemy.orm import Session
from typing import List, Optional

from quicknote_auth.db.models import KeyValueEntry

# Key-value CRUD operations

def get_value(db: Session, key: str) -> Optional[str]:
    """Get stored value by key"""
    entry = db.query(KeyValueEntry).filter(KeyValueEntry.key == key).first()
    return entry.value if entry else None

def set_value(db: Session, key: str, value: str) -> KeyValueEntry:
    """Insert or overwrite the value stored under key"""
    entry = db.query(KeyValueEntry).filter(KeyValueEntry.key == key).first()
    if entry:
        entry.value = value
    else:
        entry = KeyValueEntry(key=key, value=value)
        db.add(entry)
    db.commit()
    return entry

def remove_value(db: Session, key: str) -> bool:
    """Delete the entry; False if it did not exist"""
    result = db.query(KeyValueEntry).filter(KeyValueEntry.key == key).delete()
    db.commit()
    return result > 0

def list_keys(db: Session, prefix: str = "") -> List[str]:
    query = db.query(KeyValueEntry.key)
    if prefix:
        query = query.filter(KeyValueEntry.key.startswith(prefix, autoescape=True))
    return [row[0] for row in query.order_by(KeyValueEntry.key).all()]
