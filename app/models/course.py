"""Course model.

Only the purchasing-relevant columns live here; lesson content is managed
elsewhere. price_cents == 0 means free (never sold through Stripe).
"""

import uuid

from app.extensions import db


class Course(db.Model):
    __tablename__ = "courses"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    title = db.Column(db.String(255), nullable=False)
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    days_of_access = db.Column(db.Integer, nullable=False, default=365)
    stripe_price_id = db.Column(db.String(255), nullable=True)
    is_published = db.Column(db.Boolean, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    enrollments = db.relationship(
        "Enrollment", back_populates="course", lazy="dynamic"
    )

    @property
    def is_free(self):
        return not self.price_cents

    def __repr__(self):
        return f"<Course {self.title}>"
