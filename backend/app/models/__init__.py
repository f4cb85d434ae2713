# Importe tous les modèles pour enregistrer leurs tables dans Base.metadata
# avant que SQLAlchemy tente de résoudre les clés étrangères inter-modèles.
# convention.py doit précéder otp.py et mission_order.py (FK conventions.id).

from app.models.convention import Convention, ConventionAuditLog  # noqa: F401
from app.models.otp import OtpCode, RateLimitCounter  # noqa: F401
from app.models.mission_order import MissionOrder, MissionOrderBatch  # noqa: F401
