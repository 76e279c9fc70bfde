"""
Workout generation endpoint.

Order matters: check_and_reserve() claims the free-tier slot before the
(slow) generation call so concurrent requests cannot both pass the limit.
A generation that fails after the reservation still consumes the slot.
"""

import logging

from fastapi import APIRouter, Depends

from core.auth import Identity, get_current_identity
from core.exceptions import QuotaExceededError
from routers.deps import get_access_gate, get_workout_generator
from schemas import WorkoutRequest
from services.entitlements import AccessGate
from services.entitlements.resolver import REASON_DAILY_LIMIT
from services.workout_generation import WorkoutGenerator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/workouts", tags=["workouts"])

DAILY_LIMIT_ERROR = "Daily workout limit reached"
GRANDFATHER_EXPIRED_ERROR = "Grandfathered access expired"


def _denial_message(decision) -> str:
    if decision.reason == REASON_DAILY_LIMIT:
        limit = decision.daily_limit or 0
        noun = "workout" if limit == 1 else "workouts"
        return f"Free users can generate {limit} {noun} per day. Upgrade to Premium for unlimited AI workouts!"
    return "Your grandfathered access has ended. Upgrade to Premium to keep generating AI workouts!"


@router.post("/generate")
def generate_workout(
    request: WorkoutRequest,
    identity: Identity = Depends(get_current_identity),
    gate: AccessGate = Depends(get_access_gate),
    generator: WorkoutGenerator = Depends(get_workout_generator),
):
    decision = gate.check_and_reserve(identity.id, identity)
    if not decision.can_generate:
        error = DAILY_LIMIT_ERROR if decision.reason == REASON_DAILY_LIMIT else GRANDFATHER_EXPIRED_ERROR
        raise QuotaExceededError(decision.to_payload(), error=error, message=_denial_message(decision))

    generated = generator.generate(request)
    gate.finalize(decision, identity.id, generated.payload, generated.generation_type)

    logger.info(
        f"Generated {generated.generation_type.value} workout for user {identity.id}",
        extra={"user_id": identity.id, "tier": decision.tier.value},
    )
    return {
        "workout": generated.payload,
        "accessInfo": decision.to_payload(),
    }
