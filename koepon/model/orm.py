from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Text,
    ForeignKey,
    Index,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True)
    display_name = Column(String, nullable=False, default="")
    password_hash = Column(String, nullable=False)
    # user | vtuber | admin
    role = Column(String, nullable=False, default="user")
    # active | suspended | banned
    status = Column(String, nullable=False, default="active")
    created_at = Column(Float, nullable=False)
    last_login_at = Column(Float, nullable=True)


class VTuber(Base):
    __tablename__ = "vtubers"
    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=True)
    name = Column(String, nullable=False)
    channel_url = Column(String, nullable=False, default="")
    # pending | approved | rejected | suspended
    status = Column(String, nullable=False, default="pending")
    created_at = Column(Float, nullable=False)
    reviewed_at = Column(Float, nullable=True)


class Gacha(Base):
    __tablename__ = "gachas"
    id = Column(String, primary_key=True)
    vtuber_id = Column(String, ForeignKey("vtubers.id"), nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    # medals credited per single draw
    medal_reward = Column(Integer, nullable=False, default=10)
    # draft | active | ended
    status = Column(String, nullable=False, default="active")
    start_at = Column(Float, nullable=True)
    end_at = Column(Float, nullable=True)
    total_draws = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False)


class GachaItem(Base):
    __tablename__ = "gacha_items"
    id = Column(String, primary_key=True)
    gacha_id = Column(String, ForeignKey("gachas.id"), nullable=False,
                      index=True)
    name = Column(String, nullable=False)
    rarity = Column(String, nullable=False)
    # probability in [0, 1]; rates of one gacha are normalized on write
    drop_rate = Column(Float, nullable=False)
    image_url = Column(String, nullable=False, default="")
    max_count = Column(Integer, nullable=True)
    current_count = Column(Integer, nullable=False, default=0)


class DrawRecord(Base):
    __tablename__ = "draw_records"
    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    gacha_id = Column(String, ForeignKey("gachas.id"), nullable=False)
    payment_intent_id = Column(String, nullable=False, unique=True)
    draw_count = Column(Integer, nullable=False)
    payment_amount = Column(Integer, nullable=False)  # JPY
    medals_earned = Column(Integer, nullable=False)
    # JSON list of {id, name, rarity, imageUrl}
    items_json = Column(Text, nullable=False)
    # highest rarity in the pull, for history filters
    top_rarity = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("ix_draw_records_user_created", "user_id", "created_at"),
    )


class ExchangeItem(Base):
    __tablename__ = "exchange_items"
    id = Column(String, primary_key=True)
    vtuber_id = Column(String, ForeignKey("vtubers.id"), nullable=True)
    name = Column(String, nullable=False)
    cost = Column(Integer, nullable=False)
    # NULL = unlimited
    stock = Column(Integer, nullable=True)


class MedalTransactionRow(Base):
    __tablename__ = "medal_transactions"
    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    # earned | used
    type = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    source = Column(String, nullable=False)
    description = Column(String, nullable=False, default="")
    vtuber_id = Column(String, nullable=True)
    vtuber_name = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("ix_medal_tx_user_created", "user_id", "created_at"),
    )
