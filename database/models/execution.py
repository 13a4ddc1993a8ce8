from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, JSON, DateTime, Text
from sqlalchemy.orm import relationship
from ..base import Base, SerializerMixin, utcnow
import uuid


class FlowExecution(SerializerMixin, Base):
    __tablename__ = "flow_executions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    # Weak reference: the flow may be edited or deleted after the run
    flow_id = Column(String, index=True)
    user_id = Column(String, nullable=False, index=True)
    flow_name = Column(String)
    contact_id = Column(String, nullable=True, index=True)

    status = Column(String, default="running", index=True)  # running, completed, failed, cancelled
    is_test_run = Column(Boolean, default=False)

    trigger_context = Column(JSON)  # The event that caused selection
    context_data = Column(JSON, default=dict)  # Running memory for gates
    actions_snapshot = Column(JSON, default=list)  # Action list frozen at start

    started_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    # Pending wait: {"action_order": n, "resume_at": iso}
    resume_payload = Column(JSON(none_as_null=True), nullable=True)

    action_logs = relationship(
        "FlowActionLog",
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="FlowActionLog.id",
    )

    def to_dict(self, include_logs: bool = False):
        data = super().to_dict()
        if include_logs:
            data["action_logs"] = [log.to_dict() for log in self.action_logs]
        return data


class FlowActionLog(SerializerMixin, Base):
    __tablename__ = "flow_action_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(String, ForeignKey("flow_executions.id", ondelete="CASCADE"), nullable=False, index=True)

    action_order = Column(Integer, nullable=False)
    action_type = Column(String, nullable=False)
    outcome = Column(String, nullable=False)  # success, skipped, failed
    detail = Column(JSON)

    created_at = Column(DateTime, default=utcnow)

    execution = relationship("FlowExecution", back_populates="action_logs")
