from app.models.tenant import Tenant  # noqa: F401
from app.models.person import Person, PersonStatus  # noqa: F401
from app.models.rbac import Permission, PersonRole, Role, RolePermission  # noqa: F401
from app.models.student import (  # noqa: F401
    ClassEnrollment,
    ClassEnrollmentStatus,
    CustodyRestriction,
    EmergencyContact,
    Guardian,
    MedicalCondition,
    MedicalSeverity,
    RestrictionType,
    SchoolClass,
    Student,
    StudentEnrollmentStatus,
)
from app.models.enrollment import (  # noqa: F401
    ApplicationStatus,
    EnrollmentApplication,
    EnrollmentPeriod,
    EnrollmentPeriodStatus,
    EnrollmentPeriodType,
)
from app.models.invitation import InvitationStatus, ParentInvitation  # noqa: F401
