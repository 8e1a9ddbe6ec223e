from app.authz.models import Team, TeamMembership
from app.crm.models import CRMApplication, CRMIdempotencyKey, CRMLead, CRMTask

__all__ = [
	"Team",
	"TeamMembership",
	"CRMApplication",
	"CRMIdempotencyKey",
	"CRMLead",
	"CRMTask",
]
