"""
Station Catalog model.

A Station is a named processing stage (Assembly, Sizing, CNC, Paint, Pack,
QC ...). Its ``category`` is derived once, when the station is created or
seeded, from its local and English names. Authorization compares role
grants against that stored category and never inspects station names.

Code format: ST001, ST002, ... (generated in the service layer).
"""

from datetime import datetime, timezone

from shopfloor.models import db


# ── Constants ────────────────────────────────────────────────────────────────

STATION_CATEGORIES = {
    "assembly", "sizing", "pressing", "cnc",
    "paint", "packing", "qc", "rework", "other",
}

# Checked in order, first hit wins. Thai names are the factory's own labels.
CATEGORY_KEYWORDS = [
    ("qc",       ("qc", "quality", "inspection", "ตรวจ")),
    ("rework",   ("rework", "repair", "sand", "แก้ไข", "ซ่อม")),
    ("cnc",      ("cnc",)),
    ("packing",  ("pack", "แพ็ค", "บรรจุ")),
    ("paint",    ("paint", "colour", "color", "สี")),
    ("pressing", ("press", "อัดบาน", "อัด")),
    ("sizing",   ("sizing", "size", "ใสไม้", "ไสไม้", "ขนาด")),
    ("assembly", ("assembly", "assemble", "frame", "ประกอบ")),
]


def derive_station_category(*names):
    """Return the station category for the given names ("other" if none match)."""
    haystack = " ".join(n for n in names if n).lower()
    if not haystack:
        return "other"
    for category, keywords in CATEGORY_KEYWORDS:
        if any(kw in haystack for kw in keywords):
            return category
    return "other"


class Station(db.Model):
    __tablename__ = "stations"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(20), unique=True, nullable=False, comment="ST001, ST002, ...")
    name = db.Column(db.String(150), unique=True, nullable=False)
    name_en = db.Column(db.String(150), nullable=True)
    department = db.Column(db.String(100), nullable=True)
    category = db.Column(
        db.String(20), nullable=False, default="other",
        comment="assembly | sizing | pressing | cnc | paint | packing | qc | rework | other",
    )
    estimated_hours = db.Column(db.Float, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    sort_order = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.CheckConstraint(
            "category IN ('assembly','sizing','pressing','cnc',"
            "'paint','packing','qc','rework','other')",
            name="ck_station_category",
        ),
    )

    @property
    def is_qc(self):
        return self.category == "qc"

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "name_en": self.name_en,
            "department": self.department,
            "category": self.category,
            "estimated_hours": self.estimated_hours,
            "is_active": self.is_active,
            "sort_order": self.sort_order,
        }

    def __repr__(self):
        return f"<Station {self.code}: {self.name} [{self.category}]>"
