from __future__ import annotations
import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator

from ..llm_client import ChatClient
from .auth import User, get_current_user

router = APIRouter(prefix="/functions/v1", tags=["content"])

logger = logging.getLogger(__name__)


async def get_chat_client():
    client = ChatClient()
    try:
        yield client
    finally:
        await client.aclose()


class CareerMappingRequest(BaseModel):
    major: str = Field(..., min_length=1, max_length=200)


class ScholarshipRequest(BaseModel):
    field: str = Field(..., min_length=1, max_length=200)
    level: str = Field(..., min_length=1, max_length=100)


class AlumniRequest(BaseModel):
    field: str = Field(..., min_length=1, max_length=200)
    college: str = Field(..., min_length=1, max_length=200)


class LoanRequest(BaseModel):
    course: str = Field(..., min_length=1, max_length=200)
    duration: int = Field(..., ge=1, le=10)


class NutritionRequest(BaseModel):
    budget: float = Field(..., gt=0)
    currency: str = Field(..., min_length=1, max_length=10)
    location: str = Field(..., min_length=1, max_length=200)


class AnswersRequest(BaseModel):
    answers: Dict[str, Any]

    @field_validator("answers")
    @classmethod
    def _bounded(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        if not 1 <= len(value) <= 100:
            raise ValueError("Answers object must have between 1 and 100 entries")
        return value


def _build_career_prompt(major: str) -> str:
    return (
        f"You are a career counselor with current job market knowledge. Describe career prospects for a {major} graduate.\n"
        "Cover: the top 5 career paths with realistic salary ranges in USD, 5-year growth projections, "
        "the education and essential skills required, and current market trends.\n\n"
        "Return ONLY a JSON object with keys: careers (array of {title, description, salary, growth}), "
        "education (string), skills (array of strings), marketTrends (string)."
    )


def _build_scholarship_prompt(field: str, level: str) -> str:
    return (
        f"You are a scholarship research specialist. List 8-10 real or realistic scholarships for {level} students studying {field}.\n"
        "For each give the official name, granting organization, award amount, application deadline, a 2-3 sentence description, "
        "3-5 eligibility requirements, an application link and a status (Open or Closing Soon).\n\n"
        "Return ONLY a JSON object with key scholarships: an array of {name, organization, amount, deadline, description, "
        "eligibility, link, status}."
    )


def _build_alumni_prompt(field: str, college: str) -> str:
    return (
        f"You are a career research assistant. Profile 5-7 notable alumni of {college} who work in {field}.\n"
        "For each give a full name, current role and company, graduation year, a 2-3 sentence bio, "
        "a career path of 3-4 positions, and professional contact details.\n\n"
        "Return ONLY a JSON object with key alumni: an array of {name, currentRole, graduationYear, bio, "
        "careerPath (array of {title, company, years}), email, linkedin}."
    )


def _build_loan_prompt(course: str, duration: int) -> str:
    return (
        f"You are a financial aid expert. Give realistic student loan information for a {duration}-year {course} degree in the United States.\n"
        f"Include the estimated total cost (tuition and living expenses) over {duration} years, the average interest rate range, "
        "5-6 trusted federal and private lenders with typical rates, and brief borrowing advice.\n\n"
        "Return ONLY a JSON object with keys: estimatedCost (string), averageInterestRate (string), "
        "lenders (array of {name, type, rate}), advice (string)."
    )


def _build_nutrition_prompt(budget: float, currency: str, location: str) -> str:
    return (
        f"You are a nutrition planning expert. Create a budget-friendly 7-day meal plan for a student in {location} "
        f"with a weekly budget of {budget:g} {currency}.\n"
        f"Each day needs breakfast, lunch, dinner and 2 snacks with names, short descriptions and estimated cost in {currency}. "
        f"Add a weekly shopping list, money-saving tips for {location} and affordable local stores.\n\n"
        "Return ONLY a JSON object with keys: weeklyPlan (array of {day, meals: {breakfast, lunch, dinner, snacks}, totalCost}), "
        "shoppingList (array of {item, quantity, estimatedCost}), savingTips (array), localStores (array), totalWeeklyCost (number)."
    )


def _format_answers(answers: Dict[str, Any]) -> str:
    return "\n\n".join(f"Q: {question}\nA: {answer}" for question, answer in answers.items())


def _build_burnout_prompt(answers: Dict[str, Any]) -> str:
    return (
        "You are a mental health and wellness expert. Analyze these burnout assessment responses.\n"
        "Give a burnout score from 0 (none) to 100 (severe), a brief analysis of the main concerns, "
        "and personalized, actionable self-care tips.\n\n"
        f"Assessment responses:\n{_format_answers(answers)}\n\n"
        "Return ONLY a JSON object with keys: score (integer), analysis (string), tips (array of strings)."
    )


def _build_aptitude_prompt(answers: Dict[str, Any]) -> str:
    return (
        "You are a career counselor. Analyze the following aptitude test answers.\n"
        f"Test answers:\n{json.dumps(answers, indent=2)}\n\n"
        "Recommend the 5 best-matching careers across technology, healthcare, business, creative fields, engineering, "
        "education, science, law and social services; explain the match; describe the top career's education, skills, "
        "progression and salary; and list 10 strong colleges worldwide for it.\n\n"
        "Return ONLY a JSON object with keys: careers (array of 5 strings), summary (string), details (string), "
        "colleges (array of strings)."
    )


def _build_coaching_prompt() -> str:
    return (
        "You are a work-life balance expert. List 5-7 professional life coaches and wellness experts who specialize in "
        "work-life balance for students and young professionals.\n\n"
        "Return ONLY a JSON object with key coaches: an array of {name, credentials, expertise, bio, contact, pricing}."
    )


@router.post("/major-career-mapping")
async def major_career_mapping(req: CareerMappingRequest, user: User = Depends(get_current_user), client: ChatClient = Depends(get_chat_client)):
    logger.info("Career mapping request for %s", req.major)
    return await client.complete_json(_build_career_prompt(req.major))


@router.post("/scholarship-discovery")
async def scholarship_discovery(req: ScholarshipRequest, user: User = Depends(get_current_user), client: ChatClient = Depends(get_chat_client)):
    logger.info("Scholarship discovery request for %s (%s)", req.field, req.level)
    return await client.complete_json(_build_scholarship_prompt(req.field, req.level))


@router.post("/alumni-discovery")
async def alumni_discovery(req: AlumniRequest, user: User = Depends(get_current_user), client: ChatClient = Depends(get_chat_client)):
    logger.info("Alumni discovery request for %s at %s", req.field, req.college)
    return await client.complete_json(_build_alumni_prompt(req.field, req.college))


@router.post("/loan-information")
async def loan_information(req: LoanRequest, user: User = Depends(get_current_user), client: ChatClient = Depends(get_chat_client)):
    logger.info("Loan information request for %s (%d years)", req.course, req.duration)
    return await client.complete_json(_build_loan_prompt(req.course, req.duration))


@router.post("/analyze-aptitude")
async def analyze_aptitude(req: AnswersRequest, user: User = Depends(get_current_user), client: ChatClient = Depends(get_chat_client)):
    return await client.complete_json(_build_aptitude_prompt(req.answers))


@router.post("/work-life-coaching")
async def work_life_coaching(user: User = Depends(get_current_user), client: ChatClient = Depends(get_chat_client)):
    return await client.complete_json(
        _build_coaching_prompt(),
        system="You are a knowledgeable career counselor. Always respond with valid JSON.",
    )


# The two wellness tools below are open to signed-out visitors

@router.post("/nutrition-planning")
async def nutrition_planning(req: NutritionRequest, client: ChatClient = Depends(get_chat_client)):
    return await client.complete_json(
        _build_nutrition_prompt(req.budget, req.currency, req.location),
        system="You are a nutrition planning expert who provides practical, budget-friendly meal plans. Always respond with valid JSON.",
    )


@router.post("/analyze-burnout")
async def analyze_burnout(req: AnswersRequest, client: ChatClient = Depends(get_chat_client)):
    return await client.complete_json(
        _build_burnout_prompt(req.answers),
        system="You are a compassionate mental health expert who provides personalized wellness advice. Always respond with valid JSON.",
    )
