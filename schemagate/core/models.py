"""
Demo tenant schema. Nothing in the service imports it at runtime: the catalog
is introspected from whatever database DATABASE_URL points at. Load it with
`Base.metadata.create_all` to seed a local database, and tests build their
catalog from it with `catalog_from_metadata`.
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    ForeignKey,
    Integer,
    String,
    BigInteger,
    TIMESTAMP,
    JSON,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from schemagate.core.database import Base


# =========================
# Biz (tenant)
# =========================
class Biz(Base):
    """
    One tenant. Tables carrying a `biz_id` column are tenant-scoped and every
    pseudo request touching them must send scope.bizId.
    """

    __tablename__ = "bizes"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    slug = Column(String, nullable=False, unique=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Relationships
    locations = relationship(
        "Location",
        back_populates="biz",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


# =========================
# Location
# =========================
class Location(Base):
    __tablename__ = "locations"

    id = Column(String, primary_key=True)
    biz_id = Column(
        String,
        ForeignKey("bizes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name = Column(String, nullable=False)
    timezone = Column(String, nullable=False, server_default="UTC")

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    biz = relationship("Biz", back_populates="locations")


# =========================
# Booking order
# =========================
class BookingOrder(Base):
    __tablename__ = "booking_orders"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'cancelled', 'completed')",
            name="booking_orders_status_check",
        ),
        CheckConstraint("party_size > 0", name="booking_orders_party_size_check"),
    )

    id = Column(String, primary_key=True)
    biz_id = Column(
        String,
        ForeignKey("bizes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    location_id = Column(
        String,
        ForeignKey("locations.id", ondelete="SET NULL"),
        nullable=True,
    )

    customer_name = Column(String, nullable=False)
    status = Column(String, nullable=False, server_default="pending")
    party_size = Column(Integer, nullable=False, server_default="1")
    starts_at = Column(TIMESTAMP(timezone=True), nullable=True)
    total_minor = Column(BigInteger, nullable=False, server_default="0")
    metadata_json = Column("metadata", JSON, nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    payments = relationship(
        "Payment",
        back_populates="booking_order",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


# =========================
# Payment
# =========================
class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True)
    biz_id = Column(
        String,
        ForeignKey("bizes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    booking_order_id = Column(
        String,
        ForeignKey("booking_orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    amount_minor = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False, server_default="USD")

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    booking_order = relationship("BookingOrder", back_populates="payments")
