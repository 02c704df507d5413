from leadflow.crm.models import CRMLead, CRMMessageTemplate, CRMTimelineEntry

__all__ = [
    "CRMLead",
    "CRMMessageTemplate",
    "CRMTimelineEntry",
]
