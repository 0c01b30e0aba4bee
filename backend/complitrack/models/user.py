"""User / Client モデル"""
from sqlalchemy import Column, Integer, String, Date, DateTime
from sqlalchemy.sql import func
from complitrack.core.db import Base

ADMIN_ROLES = ("admin", "superadmin")


class User(Base):
    """ユーザーモデル"""
    __tablename__ = "users"
    
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, index=True)
    email = Column(String, nullable=True, unique=True, index=True)
    role = Column(String, nullable=False, default="user")
    
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


class Client(Base):
    """クライアント（エンティティ）モデル"""
    __tablename__ = "clients"
    
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, index=True)
    since = Column(Date, nullable=True)
    
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
