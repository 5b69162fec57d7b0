from sqlalchemy import Column, Integer, String, Boolean, BigInteger, DateTime, func
from app.core.database import Base


class User(Base):
    """ユーザー (作成は認証サービス側。本サービスはプラン・残高のみ更新)"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    current_plan = Column(String(64), nullable=True, comment="現在のプラン名")
    token_balance = Column(BigInteger, nullable=False, default=0, comment="利用可能トークン残高")
    last_balance_reset_at = Column(DateTime, nullable=True, comment="最終残高リセット日時")
    is_tester = Column(Boolean, nullable=False, default=False, comment="テスター (トライアル先行利用)")
    trial_used_at = Column(DateTime, nullable=True, comment="トライアル使用日時")
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
