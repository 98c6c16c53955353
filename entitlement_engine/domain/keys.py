from __future__ import annotations
from enum import Enum
from typing import Dict, Any


class EntitlementKey(str, Enum):
    # Core
    ACCESS_DASHBOARD = "access_dashboard"
    ACCESS_ANALYTICS = "access_analytics"
    ADVANCED_ANALYTICS = "advanced_analytics"

    # Education
    CREATE_COURSE = "create_course"
    ASSIGN_HOMEWORK = "assign_homework"
    TAKE_QUIZ = "take_quiz"
    CLASSROOM_MANAGEMENT = "classroom_management"
    CLASSROOM_ACCESS = "classroom_access"
    SUBJECT_ACCESS = "subject_access"

    # Usage-based
    AI_TOKENS = "ai_tokens"
    QUIZ_ATTEMPTS = "quiz_attempts"
    QUESTION_GENERATION = "question_generation"
    AI_TUTOR_ACCESS = "ai_tutor_access"


class EntitlementRole(str, Enum):
    LEARNER = "learner"
    EDUCATOR = "educator"


class EntitlementStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    REVOKED = "revoked"


ENTITLEMENT_REGISTRY: Dict[EntitlementKey, Dict[str, Any]] = {
    EntitlementKey.ACCESS_DASHBOARD: {
        "description": "Access to the dashboard",
        "roles": [EntitlementRole.LEARNER, EntitlementRole.EDUCATOR],
        "usageBased": False,
    },
    EntitlementKey.ACCESS_ANALYTICS: {
        "description": "Access to analytics",
        "roles": [EntitlementRole.LEARNER, EntitlementRole.EDUCATOR],
        "usageBased": False,
    },
    EntitlementKey.ADVANCED_ANALYTICS: {
        "description": "Access to advanced analytics",
        "roles": [EntitlementRole.LEARNER, EntitlementRole.EDUCATOR],
        "usageBased": False,
    },
    EntitlementKey.CREATE_COURSE: {
        "description": "Create courses",
        "roles": [EntitlementRole.EDUCATOR],
        "usageBased": False,
    },
    EntitlementKey.ASSIGN_HOMEWORK: {
        "description": "Assign homework",
        "roles": [EntitlementRole.EDUCATOR],
        "usageBased": False,
    },
    EntitlementKey.TAKE_QUIZ: {
        "description": "Take quizzes",
        "roles": [EntitlementRole.LEARNER],
        "usageBased": False,
    },
    EntitlementKey.CLASSROOM_MANAGEMENT: {
        "description": "Access to classroom management",
        "roles": [EntitlementRole.EDUCATOR],
        "usageBased": True,
    },
    EntitlementKey.CLASSROOM_ACCESS: {
        "description": "Access to classroom",
        "roles": [EntitlementRole.LEARNER],
        "usageBased": True,
    },
    EntitlementKey.SUBJECT_ACCESS: {
        "description": "Access to subject",
        "roles": [EntitlementRole.LEARNER, EntitlementRole.EDUCATOR],
        "usageBased": True,
    },
    EntitlementKey.AI_TOKENS: {
        "description": "AI tokens",
        "roles": [EntitlementRole.LEARNER, EntitlementRole.EDUCATOR],
        "usageBased": True,
    },
    EntitlementKey.QUIZ_ATTEMPTS: {
        "description": "Quiz attempts",
        "roles": [EntitlementRole.LEARNER],
        "usageBased": True,
    },
    EntitlementKey.QUESTION_GENERATION: {
        "description": "Access to question generation",
        "roles": [EntitlementRole.LEARNER, EntitlementRole.EDUCATOR],
        "usageBased": True,
    },
    EntitlementKey.AI_TUTOR_ACCESS: {
        "description": "Access to AI tutor",
        "roles": [EntitlementRole.LEARNER],
        "usageBased": True,
    },
}


def is_usage_based(key: EntitlementKey) -> bool:
    return bool(ENTITLEMENT_REGISTRY.get(key, {}).get("usageBased"))
