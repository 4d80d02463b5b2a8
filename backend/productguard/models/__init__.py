"""ProductGuard Enforcement Engine - Data Models"""
from .db_models import (
    # Enums
    ActorType, InfringementStatus, InfringementEvent, RiskLevel, TargetType,
    DeliveryMethod, QueueStatus, TakedownStatus, VerificationVerdict, CostEventType,
    # Tables
    ProductDB, ScanDB, ScanRunDB, InfringementDB, StatusTransitionDB,
    VerificationFeedbackDB, TakedownDB, QueueItemDB, UsageCostEventDB,
)

__all__ = [
    "ActorType", "InfringementStatus", "InfringementEvent", "RiskLevel", "TargetType",
    "DeliveryMethod", "QueueStatus", "TakedownStatus", "VerificationVerdict", "CostEventType",
    "ProductDB", "ScanDB", "ScanRunDB", "InfringementDB", "StatusTransitionDB",
    "VerificationFeedbackDB", "TakedownDB", "QueueItemDB", "UsageCostEventDB",
]
