from datetime import datetime
import json

from grundy.extensions import db


def _load_json(raw, default):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except Exception:
        return default


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    public_id = db.Column(db.String(40), nullable=False, unique=True)

    # Correlation key every payment notification is matched against.
    order_reference = db.Column(db.String(80), nullable=False, unique=True, index=True)

    customer_email = db.Column(db.String(255), nullable=False, index=True)
    customer_name = db.Column(db.String(160), nullable=False, default="")
    delivery_address = db.Column(db.String(255), nullable=True)

    # Major currency unit, equals the split's order total.
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    items_json = db.Column(db.Text, nullable=True)

    payment_method = db.Column(db.String(40), nullable=False, index=True)
    payment_status = db.Column(db.String(24), nullable=False, default="pending", index=True)
    payment_reference = db.Column(db.String(128), nullable=True, index=True)
    payment_details_json = db.Column(db.Text, nullable=True)

    # Snapshot of the split at placement time; never rewritten.
    vendor_payouts_json = db.Column(db.Text, nullable=True)
    virtual_account_number = db.Column(db.String(32), nullable=True, index=True)

    rider_id = db.Column(db.String(64), nullable=True)
    terminal_id = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    paid_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)

    @property
    def items(self) -> list:
        return _load_json(self.items_json, [])

    @property
    def payment_details(self):
        return _load_json(self.payment_details_json, None)

    @payment_details.setter
    def payment_details(self, value):
        self.payment_details_json = json.dumps(value, default=str) if value is not None else None

    @property
    def vendor_payouts(self):
        return _load_json(self.vendor_payouts_json, None)
