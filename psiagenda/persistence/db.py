from __future__ import annotations
import os
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    create_engine, Column, Integer, String, DateTime, Date, Boolean, ForeignKey, Text, JSON, Index
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker, scoped_session

# --------------------------------------------------------------------
# Configuração
# --------------------------------------------------------------------
DB_PATH = os.getenv("APP_DB_PATH", "data/app.db")
DB_URL = os.getenv("DB_URL", f"sqlite:///{DB_PATH}")

Base = declarative_base()
SessionLocal = scoped_session(
    sessionmaker(autoflush=False, autocommit=False, expire_on_commit=False)
)
engine = None


def _make_engine(url: str):
    return create_engine(
        url,
        connect_args={"check_same_thread": False} if url.startswith("sqlite") else {},
        future=True,
    )


def configure(url: Optional[str] = None) -> None:
    """
    (Re)liga o SessionLocal a um banco. Sem argumento usa DB_URL.
    Os testes chamam configure("sqlite:///<tmp>/app.db").
    """
    global engine
    target = url or DB_URL
    if target.startswith("sqlite:///") and not target.startswith("sqlite:///:memory:"):
        folder = os.path.dirname(target[len("sqlite:///"):])
        if folder:
            os.makedirs(folder, exist_ok=True)
    SessionLocal.remove()
    engine = _make_engine(target)
    SessionLocal.configure(bind=engine)


def _utcnow() -> datetime:
    return datetime.utcnow()


# --------------------------------------------------------------------
# Modelos
# --------------------------------------------------------------------
class Professional(Base):
    __tablename__ = "professionals"

    id = Column(String(64), primary_key=True)
    full_name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(32), nullable=True)
    # perfis de demonstração nunca processam pagamento
    is_demo = Column(Boolean, nullable=False, default=False)
    # configurações do gateway (tela de configurações do profissional)
    gateway = Column(String(32), nullable=True)
    gateway_credentials = Column(Text, nullable=True)
    gateway_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=_utcnow)

    services = relationship("Service", back_populates="professional")


class Service(Base):
    __tablename__ = "services"

    id = Column(String(64), primary_key=True)
    professional_id = Column(String(64), ForeignKey("professionals.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price_cents = Column(Integer, nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=50)
    session_type = Column(String(64), nullable=False, default="Sessão Individual")
    checkout_config = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=_utcnow)

    professional = relationship("Professional", back_populates="services")


class Transaction(Base):
    """Tentativa de pagamento. Registro financeiro: nunca é apagado."""

    __tablename__ = "transactions"

    id = Column(String(64), primary_key=True)
    professional_id = Column(String(64), ForeignKey("professionals.id"), nullable=False, index=True)
    service_id = Column(String(64), ForeignKey("services.id"), nullable=False, index=True)
    customer_name = Column(String(255), nullable=False)
    customer_email = Column(String(255), nullable=False)
    customer_phone = Column(String(32), nullable=True)
    customer_cpf = Column(String(14), nullable=True)
    amount_cents = Column(Integer, nullable=False)
    payment_method = Column(String(16), nullable=False)      # 'pix' | 'credit_card'
    payment_status = Column(String(16), nullable=False, default="pending")
    gateway = Column(String(32), nullable=False)
    simulated = Column(Boolean, nullable=False, default=False)
    gateway_payment_id = Column(String(128), nullable=True, index=True)
    pix_qr_code = Column(Text, nullable=True)
    pix_code = Column(Text, nullable=True)
    appointment_date = Column(Date, nullable=True)
    appointment_time = Column(String(5), nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    events = relationship("PaymentEvent", back_populates="transaction", order_by="PaymentEvent.id")


class PaymentEvent(Base):
    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True)
    transaction_id = Column(String(64), ForeignKey("transactions.id"), nullable=False, index=True)
    gateway = Column(String(32), nullable=True)
    event_type = Column(String(32), nullable=False)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=_utcnow)

    transaction = relationship("Transaction", back_populates="events")


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(String(64), primary_key=True)
    professional_id = Column(String(64), ForeignKey("professionals.id"), nullable=False, index=True)
    # no máximo um agendamento por transação
    transaction_id = Column(String(64), ForeignKey("transactions.id"), nullable=False, unique=True)
    client_name = Column(String(255), nullable=False)
    client_email = Column(String(255), nullable=False)
    client_phone = Column(String(32), nullable=True)
    appointment_date = Column(Date, nullable=False)
    appointment_time = Column(String(5), nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=50)
    session_type = Column(String(64), nullable=True)
    status = Column(String(16), nullable=False, default="confirmed")
    payment_status = Column(String(16), nullable=False, default="paid")
    payment_method = Column(String(16), nullable=True)
    amount_cents = Column(Integer, nullable=True)
    virtual_room_code = Column(String(16), nullable=True)
    virtual_room_link = Column(String(512), nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class AccessToken(Base):
    __tablename__ = "appointment_access_tokens"

    id = Column(Integer, primary_key=True)
    appointment_id = Column(String(64), ForeignKey("appointments.id"), nullable=False, index=True)
    client_email = Column(String(255), nullable=False)
    token = Column(String(64), nullable=False, unique=True)
    created_at = Column(DateTime, default=_utcnow)


Index("ix_appointments_slot", Appointment.professional_id, Appointment.appointment_date, Appointment.appointment_time)

# --------------------------------------------------------------------
# Bootstrapping
# --------------------------------------------------------------------
def init_db() -> None:
    """Cria tabelas caso não existam (uso simples; produção usa as migrations)."""
    if engine is None:
        configure()
    Base.metadata.create_all(bind=engine)


@contextmanager
def get_session():
    """Retorna sessão SQLAlchemy."""
    if engine is None:
        configure()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
