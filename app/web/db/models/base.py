from typing import Any, Dict

from app.web.db import db


class BaseModel(db.Model):
    """Abstract model with create/save helpers shared by every table."""
    __abstract__ = True

    @classmethod
    def create(cls, commit: bool = True, **kwargs):
        instance = cls(**kwargs)
        return instance.save(commit=commit)

    def save(self, commit: bool = True):
        db.session.add(self)
        if commit:
            db.session.commit()
        return self

    def as_dict(self) -> Dict[str, Any]:
        return {c.name: getattr(self, c.name) for c in self.__table__.columns}
