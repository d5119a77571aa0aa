from datetime import datetime

from grundy.extensions import db


class OrderTransition(db.Model):
    __tablename__ = "order_transitions"

    id = db.Column(db.Integer, primary_key=True)
    order_reference = db.Column(db.String(80), nullable=False, index=True)
    from_status = db.Column(db.String(24), nullable=False, default="")
    to_status = db.Column(db.String(24), nullable=False)
    source = db.Column(db.String(64), nullable=False, default="system")
    reason = db.Column(db.String(240), nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_reference": self.order_reference,
            "from_status": self.from_status or "",
            "to_status": self.to_status or "",
            "source": self.source or "",
            "reason": self.reason or "",
            "metadata_json": self.metadata_json or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
