import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    and_,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form every timestamp column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ORDER_STATUSES


TERMINAL_ORDER_STATUSES = frozenset(
    {OrderStatus.COMPLETED, OrderStatus.FAILED, OrderStatus.CANCELLED}
)


class OrderStepStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ActionType(str, enum.Enum):
    DEVICE_READ = "DEVICE_READ"
    DEVICE_WRITE = "DEVICE_WRITE"
    MANUAL_CONFIRM = "MANUAL_CONFIRM"
    DATA_VALIDATION = "DATA_VALIDATION"
    BARCODE_SCAN = "BARCODE_SCAN"
    CAMERA_CHECK = "CAMERA_CHECK"
    DELAY_WAIT = "DELAY_WAIT"

    @property
    def is_device_bound(self) -> bool:
        return self in (ActionType.DEVICE_READ, ActionType.DEVICE_WRITE)


class ActionLogStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class WorkstationStatus(str, enum.Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class TerminationReason(str, enum.Enum):
    EXPIRED = "EXPIRED"
    LOGGED_OUT = "LOGGED_OUT"
    TAKEN_OVER = "TAKEN_OVER"


class Workstation(Base):
    """Physical workstation model"""

    __tablename__ = "workstations"

    id = Column(String(36), primary_key=True, index=True, default=new_id)
    code = Column(String(50), unique=True, index=True, nullable=False)
    name = Column(String(100), nullable=False)
    description = Column(Text)
    status = Column(
        Enum(WorkstationStatus, native_enum=False, length=16),
        default=WorkstationStatus.OFFLINE,
        nullable=False,
    )
    last_connected = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

    devices = relationship("Device", back_populates="workstation")
    sessions = relationship("WorkstationSession", back_populates="workstation")


class Device(Base):
    """Networked device (PLC, scanner, screwdriver controller) model"""

    __tablename__ = "devices"

    id = Column(String(36), primary_key=True, index=True, default=new_id)
    device_code = Column(String(100), unique=True, index=True, nullable=False)
    name = Column(String(100))
    device_type = Column(String(50), nullable=False, default="PLC")
    brand = Column(String(50))
    ip_address = Column(String(64))
    port = Column(Integer)
    protocol = Column(String(32), default="TCP/IP")
    workstation_id = Column(String(36), ForeignKey("workstations.id", ondelete="SET NULL"))
    settings = Column(JSON)

    workstation = relationship("Workstation", back_populates="devices")


class Process(Base):
    """Manufacturing process model: an ordered list of steps"""

    __tablename__ = "processes"

    id = Column(String(36), primary_key=True, index=True, default=new_id)
    name = Column(String(100), nullable=False)
    version = Column(String(20), default="1.0")
    created_at = Column(DateTime, default=utcnow)

    steps = relationship(
        "Step", back_populates="process", order_by="Step.sequence", cascade="all, delete-orphan"
    )


class Step(Base):
    """Process step model, bound to a workstation"""

    __tablename__ = "steps"
    __table_args__ = (UniqueConstraint("process_id", "sequence", name="uq_step_process_sequence"),)

    id = Column(String(36), primary_key=True, index=True, default=new_id)
    process_id = Column(String(36), ForeignKey("processes.id", ondelete="CASCADE"), nullable=False)
    workstation_id = Column(String(36), ForeignKey("workstations.id", ondelete="SET NULL"))
    sequence = Column(Integer, nullable=False)
    name = Column(String(100), nullable=False)
    description = Column(Text)

    process = relationship("Process", back_populates="steps")
    workstation = relationship("Workstation")
    actions = relationship(
        "Action", back_populates="step", order_by="Action.sequence", cascade="all, delete-orphan"
    )


class Action(Base):
    """Step action model"""

    __tablename__ = "actions"
    __table_args__ = (UniqueConstraint("step_id", "sequence", name="uq_action_step_sequence"),)

    id = Column(String(36), primary_key=True, index=True, default=new_id)
    step_id = Column(String(36), ForeignKey("steps.id", ondelete="CASCADE"), nullable=False)
    sequence = Column(Integer, nullable=False)
    name = Column(String(100), nullable=False)
    action_type = Column(Enum(ActionType, native_enum=False, length=32), nullable=False)
    device_id = Column(String(36), ForeignKey("devices.id", ondelete="SET NULL"))
    device_address = Column(String(100))
    data_type = Column(String(20), default="BOOL")
    expected_value = Column(String(255))
    validation_rule = Column(JSON)  # e.g. {"type": "range", "min": 0, "max": 10}
    is_required = Column(Boolean, default=True, nullable=False)
    timeout_ms = Column(Integer, default=5000)
    retry_count = Column(Integer, default=0, nullable=False)
    parameters = Column(JSON)

    step = relationship("Step", back_populates="actions")
    device = relationship("Device")


class Order(Base):
    """Production order model"""

    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, index=True, default=new_id)
    order_number = Column(String(50), unique=True, index=True, nullable=False)
    production_number = Column(String(50), index=True)
    quantity = Column(Integer, nullable=False, default=1)
    status = Column(
        Enum(OrderStatus, native_enum=False, length=16),
        default=OrderStatus.PENDING,
        nullable=False,
        index=True,
    )
    priority = Column(Integer, default=0)
    process_id = Column(String(36), ForeignKey("processes.id"), nullable=False)
    current_step_id = Column(String(36), ForeignKey("steps.id", ondelete="SET NULL"))
    current_station_id = Column(String(36), ForeignKey("workstations.id", ondelete="SET NULL"))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    process = relationship("Process")
    order_steps = relationship(
        "OrderStep", back_populates="order", cascade="all, delete-orphan"
    )
    status_history = relationship(
        "OrderStatusHistory",
        back_populates="order",
        order_by="OrderStatusHistory.changed_at.desc()",
    )


class OrderStep(Base):
    """Execution record of one process step for one order"""

    __tablename__ = "order_steps"
    __table_args__ = (UniqueConstraint("order_id", "step_id", name="uq_order_step"),)

    id = Column(String(36), primary_key=True, index=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    step_id = Column(String(36), ForeignKey("steps.id", ondelete="CASCADE"), nullable=False)
    workstation_id = Column(String(36), ForeignKey("workstations.id", ondelete="SET NULL"))
    status = Column(
        Enum(OrderStepStatus, native_enum=False, length=16),
        default=OrderStepStatus.PENDING,
        nullable=False,
    )
    executed_by = Column(String(100))
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    notes = Column(Text)
    error_message = Column(Text)

    order = relationship("Order", back_populates="order_steps")
    step = relationship("Step")
    action_logs = relationship("ActionLog", back_populates="order_step")


class OrderStatusHistory(Base):
    """Append-only ledger of order status transitions"""

    __tablename__ = "order_status_history"

    id = Column(String(36), primary_key=True, index=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    from_status = Column(Enum(OrderStatus, native_enum=False, length=16))
    to_status = Column(Enum(OrderStatus, native_enum=False, length=16), nullable=False)
    changed_by = Column(String(100), nullable=False, default="system")
    changed_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    reason = Column(Text)
    notes = Column(Text)

    order = relationship("Order", back_populates="status_history")


class WorkstationSession(Base):
    """One operator's occupancy of a workstation"""

    __tablename__ = "workstation_sessions"

    id = Column(String(36), primary_key=True, index=True, default=new_id)
    session_id = Column(String(64), unique=True, index=True, nullable=False, default=new_id)
    workstation_id = Column(String(36), ForeignKey("workstations.id"), nullable=False)
    username = Column(String(100))
    login_time = Column(DateTime, default=utcnow, nullable=False)
    last_activity = Column(DateTime, default=utcnow, nullable=False)
    logout_time = Column(DateTime)
    active = Column(Boolean, default=True, nullable=False)
    termination_reason = Column(Enum(TerminationReason, native_enum=False, length=16))
    terminated_by = Column(String(100))
    settings = Column(JSON)

    workstation = relationship("Workstation", back_populates="sessions")


_OPEN_SESSION = and_(WorkstationSession.active.is_(True), WorkstationSession.logout_time.is_(None))

# At most one open session per workstation
Index(
    "uq_open_session_per_workstation",
    WorkstationSession.workstation_id,
    unique=True,
    postgresql_where=_OPEN_SESSION,
    sqlite_where=_OPEN_SESSION,
)


class ActionLog(Base):
    """Audit record of one action execution attempt"""

    __tablename__ = "action_logs"

    id = Column(String(36), primary_key=True, index=True, default=new_id)
    action_id = Column(String(36), ForeignKey("actions.id", ondelete="SET NULL"), index=True)
    order_step_id = Column(String(36), ForeignKey("order_steps.id", ondelete="SET NULL"), index=True)
    device_id = Column(String(36), ForeignKey("devices.id", ondelete="SET NULL"))
    status = Column(Enum(ActionLogStatus, native_enum=False, length=16), nullable=False)
    executed_by = Column(String(100))
    executed_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    attempt = Column(Integer, default=1, nullable=False)
    parameters = Column(JSON)
    request_payload = Column(JSON)
    response_payload = Column(JSON)
    actual_value = Column(String(255))
    validation_result = Column(Boolean)
    execution_time_ms = Column(Integer)
    error_code = Column(String(50))
    error_message = Column(Text)

    order_step = relationship("OrderStep", back_populates="action_logs")
