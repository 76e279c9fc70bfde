"""
Workout generation provider.

OpenAI chat completions when an API key is configured, built-in templates
otherwise (or when the AI call fails). The entitlement engine treats the
result as opaque payload.
"""
import json
import logging
import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from openai import OpenAI

from core.config import settings
from schemas import WorkoutRequest
from services.entitlements.records import GenerationType

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a professional fitness trainer. Create safe, effective workout plans. "
    "Respond only with valid JSON."
)

WORKOUT_NAMES = {
    "strength": ["Power Builder", "Strength Foundation", "Iron Core"],
    "muscle": ["Muscle Sculptor", "Mass Builder", "Hypertrophy Focus"],
    "endurance": ["Cardio Crusher", "Endurance Builder", "Stamina Booster"],
    "weight_loss": ["Fat Burner", "Lean Machine", "Metabolic Blast"],
    "general": ["Total Body", "Full Spectrum", "Complete Fitness"],
}

TEMPLATE_EXERCISES = {
    "strength": {
        "bodyweight": [
            {"name": "Push-ups", "sets": "3", "reps": "8-12", "notes": "Keep body straight"},
            {"name": "Squats", "sets": "3", "reps": "12-15", "notes": "Go deep, chest up"},
            {"name": "Pike Push-ups", "sets": "3", "reps": "6-10", "notes": "Targets shoulders"},
            {"name": "Single-leg Glute Bridges", "sets": "3", "reps": "10 each leg", "notes": "Squeeze glutes"},
        ],
        "dumbbells": [
            {"name": "Dumbbell Press", "sets": "3", "reps": "8-10", "notes": "Control the weight"},
            {"name": "Goblet Squats", "sets": "3", "reps": "10-12", "notes": "Hold dumbbell at chest"},
            {"name": "Romanian Deadlifts", "sets": "3", "reps": "8-10", "notes": "Hinge at hips"},
            {"name": "Rows", "sets": "3", "reps": "10-12", "notes": "Squeeze shoulder blades"},
        ],
        "full_gym": [
            {"name": "Bench Press", "sets": "3", "reps": "6-8", "notes": "Use spotter if available"},
            {"name": "Squats", "sets": "3", "reps": "8-10", "notes": "Keep knees aligned"},
            {"name": "Deadlifts", "sets": "3", "reps": "5-6", "notes": "Perfect form essential"},
            {"name": "Pull-ups", "sets": "3", "reps": "5-8", "notes": "Use assistance if needed"},
        ],
    },
    "endurance": {
        "bodyweight": [
            {"name": "Jumping Jacks", "sets": "3", "reps": "30 seconds", "notes": "Keep steady rhythm"},
            {"name": "Mountain Climbers", "sets": "3", "reps": "30 seconds", "notes": "Fast alternating legs"},
            {"name": "Burpees", "sets": "3", "reps": "10-15", "notes": "Full body movement"},
            {"name": "High Knees", "sets": "3", "reps": "30 seconds", "notes": "Drive knees up high"},
        ],
    },
}

DIFFICULTY_BY_LEVEL = {"beginner": 3, "intermediate": 6}


@dataclass
class GeneratedWorkout:
    payload: Dict
    generation_type: GenerationType


def template_workout(request: WorkoutRequest, rng: Optional[random.Random] = None) -> Dict:
    rng = rng or random
    names = WORKOUT_NAMES.get(request.goals, WORKOUT_NAMES["general"])
    by_goal = TEMPLATE_EXERCISES.get(request.goals, TEMPLATE_EXERCISES["strength"])
    exercises: List[Dict] = (
        by_goal.get(request.equipment)
        or by_goal.get("bodyweight")
        or next(iter(by_goal.values()))
    )
    return {
        "name": f"{rng.choice(names)} ({request.fitness_level})",
        "description": f"A {request.duration}-minute {request.goals} workout for {request.fitness_level} level",
        "exercises": [dict(e) for e in exercises[:4]],
        "estimatedCalories": request.duration * 5,
        "difficulty": DIFFICULTY_BY_LEVEL.get(request.fitness_level, 8),
    }


def _user_prompt(request: WorkoutRequest) -> str:
    return f"""Generate a personalized workout plan with the following specifications:
- Fitness Level: {request.fitness_level}
- Primary Goal: {request.goals}
- Duration: {request.duration} minutes
- Available Equipment: {request.equipment}

Please provide a structured workout plan in JSON format with:
- name: A catchy workout name
- description: Brief description of the workout
- exercises: Array of main exercises with name, sets, reps, and optional notes
- estimatedCalories: Estimated calories burned
- difficulty: Difficulty rating (1-10)

Make sure the workout is appropriate for the specified fitness level and achievable with the available equipment."""


class WorkoutGenerator:
    def __init__(self, client: Optional[OpenAI] = None, model: Optional[str] = None) -> None:
        if client is None and settings.OPENAI_API_KEY:
            try:
                client = OpenAI(api_key=settings.OPENAI_API_KEY)
            except Exception as e:
                logger.warning(f"OpenAI client not initialized: {e}")
        self.client = client
        self.model = model or settings.WORKOUT_GENERATION_MODEL

    def _call_ai(self, request: WorkoutRequest) -> Optional[Dict]:
        if self.client is None:
            return None
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": _user_prompt(request)},
                ],
                temperature=0.7,
                max_tokens=settings.WORKOUT_GENERATION_MAX_TOKENS,
            )
            content = response.choices[0].message.content or ""
            plan = json.loads(content)
        except Exception as e:
            logger.error(f"OpenAI API error, using template fallback: {e}")
            return None
        if not isinstance(plan, dict) or not plan.get("name") or not plan.get("exercises"):
            logger.error("OpenAI returned an incomplete workout, using template fallback")
            return None
        return plan

    def generate(self, request: WorkoutRequest) -> GeneratedWorkout:
        plan = self._call_ai(request)
        if plan is not None:
            plan["source"] = "openai"
            generation_type = GenerationType.AI
        else:
            plan = template_workout(request)
            plan["source"] = "fallback"
            plan["note"] = (
                "Generated using built-in templates due to AI service unavailability"
                if self.client is not None
                else "Generated using built-in templates"
            )
            generation_type = GenerationType.FALLBACK

        plan["id"] = str(uuid.uuid4())
        plan["createdAt"] = datetime.now(timezone.utc).isoformat()
        plan["userPreferences"] = {
            "fitnessLevel": request.fitness_level,
            "goals": request.goals,
            "duration": request.duration,
            "equipment": request.equipment,
        }
        return GeneratedWorkout(payload=plan, generation_type=generation_type)
