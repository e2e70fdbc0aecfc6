from app.models.audit import AuditLog
from app.crm.models import (
	CRMApprovalDecision,
	CRMApprovalProcess,
	CRMApprovalRequest,
	CRMBlueprintStage,
	CRMBlueprintTransition,
	CRMModule,
	CRMModuleField,
	CRMRecord,
	CRMUserProfile,
	CRMValidationRule,
)

__all__ = [
	"AuditLog",
	"CRMApprovalDecision",
	"CRMApprovalProcess",
	"CRMApprovalRequest",
	"CRMBlueprintStage",
	"CRMBlueprintTransition",
	"CRMModule",
	"CRMModuleField",
	"CRMRecord",
	"CRMUserProfile",
	"CRMValidationRule",
]
