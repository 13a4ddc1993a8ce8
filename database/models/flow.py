from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, JSON, DateTime, Text, Time, UniqueConstraint
from sqlalchemy.orm import relationship
from ..base import Base, SerializerMixin, utcnow
import uuid


class AutoEngagementFlow(SerializerMixin, Base):
    __tablename__ = "auto_engagement_flows"
    __table_args__ = (
        # NULL priorities are allowed to repeat; assigned ones are unique per owner
        UniqueConstraint("user_id", "priority", name="uq_flow_user_priority"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)

    name = Column(String, nullable=False)
    description = Column(Text)
    enabled = Column(Boolean, default=True, nullable=False)
    priority = Column(Integer, nullable=True)  # lower runs first

    business_hours_start = Column(Time, nullable=True)
    business_hours_end = Column(Time, nullable=True)
    business_hours_timezone = Column(String, nullable=True)

    # Abort the sequence on the first failed action instead of continuing
    stop_on_failure = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    trigger_conditions = relationship(
        "FlowTriggerCondition",
        back_populates="flow",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="FlowTriggerCondition.position",
    )
    actions = relationship(
        "FlowAction",
        back_populates="flow",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="FlowAction.action_order",
    )

    @property
    def has_business_hours(self) -> bool:
        return self.business_hours_start is not None and self.business_hours_end is not None

    def to_dict(self, include_details: bool = False):
        data = super().to_dict()
        if include_details:
            data["trigger_conditions"] = [c.to_dict() for c in self.trigger_conditions]
            data["actions"] = [a.to_dict() for a in self.actions]
        return data

    def __repr__(self):
        return f"<AutoEngagementFlow {self.name} (priority={self.priority})>"


class FlowTriggerCondition(SerializerMixin, Base):
    __tablename__ = "flow_trigger_conditions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    flow_id = Column(String, ForeignKey("auto_engagement_flows.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, default=0)  # evaluation order within the set

    condition_type = Column(String, nullable=False)  # lead_stage, lead_score, tag, ...
    condition_operator = Column(String, nullable=False)  # equals, contains, greater_than, ...
    condition_value = Column(JSON)

    created_at = Column(DateTime, default=utcnow)

    flow = relationship("AutoEngagementFlow", back_populates="trigger_conditions")


class FlowAction(SerializerMixin, Base):
    __tablename__ = "flow_actions"
    __table_args__ = (
        UniqueConstraint("flow_id", "action_order", name="uq_flow_action_order"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    flow_id = Column(String, ForeignKey("auto_engagement_flows.id", ondelete="CASCADE"), nullable=False, index=True)

    action_order = Column(Integer, nullable=False)
    action_type = Column(String, nullable=False)  # ai_call, whatsapp_message, email, wait
    action_config = Column(JSON, default=dict)

    # Optional gate evaluated against the execution context
    condition_type = Column(String, nullable=True)
    condition_value = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    flow = relationship("AutoEngagementFlow", back_populates="actions")
