"""
Study assistant backed by hosted language models.

Queries are screened against an academic keyword list, wrapped in a prompt
that carries whatever content the user is looking at, and sent to each
backend in ``BACKENDS`` until one answers.
"""

import logging
from typing import Callable, Dict, List, Optional, Tuple

import requests

import settings

logger = logging.getLogger(__name__)

OFF_TOPIC_REPLY = "Sorry, I can only assist with syllabus, notes, or previous year questions."
UNAVAILABLE_REPLY = "Sorry, I am currently unable to process your request. Please try again later."
OFF_TOPIC_DOUBT_REPLY = "Sorry, I can only help with academic-related doubts."

ACADEMIC_KEYWORDS = [
    "syllabus", "notes", "pyq", "exam", "question", "study", "topic", "subject",
    "chapter", "lecture", "assignment", "homework", "quiz", "test", "course",
    "semester", "year", "branch", "department", "faculty", "professor", "teacher",
    "student", "class", "grade", "mark", "score", "assessment", "evaluation",
    "curriculum", "module", "unit", "practical", "theory", "lab", "tutorial",
    "reference", "book", "material", "resource", "learning", "education",
    "data structure", "algorithm", "computer science", "programming", "memory management",
    "stack", "queue", "linked list", "tree", "graph", "sorting", "searching",
]

FOCUS = {
    "syllabus": "Focus on curriculum structure, topic importance, and study planning.",
    "note": "Focus on concept explanation, examples, and key points.",
    "pyq": "Focus on solution approach, important concepts, and exam patterns.",
    "video": "Focus on concept explanation, examples, and key points.",
}
DEFAULT_FOCUS = "Provide academic-focused guidance."


def is_academic_query(query: str) -> bool:
    text = (query or "").lower()
    return any(keyword in text for keyword in ACADEMIC_KEYWORDS)


def get_query_context(query: str) -> str:
    text = (query or "").lower()
    if "syllabus" in text:
        return "syllabus"
    if "notes" in text:
        return "note"
    if "pyq" in text or "previous year" in text:
        return "pyq"
    return "general"


def build_prompt(query: str, context: str = "", context_type: str = "general") -> str:
    prompt = f"As an academic assistant, help with the following query: {query}\n\n"
    if context:
        prompt += f"Context ({context_type}):\n{context}\n\n"
    prompt += FOCUS.get(context_type, DEFAULT_FOCUS)
    return prompt


# ----------------------
# Backends
# ----------------------
def ask_gemini(prompt: str) -> str:
    if not settings.GEMINI_API_KEY:
        raise RuntimeError("GEMINI_API_KEY is not set")
    url = f"https://generativelanguage.googleapis.com/v1beta/models/{settings.GEMINI_MODEL}:generateContent"
    response = requests.post(
        url,
        params={"key": settings.GEMINI_API_KEY},
        json={"contents": [{"parts": [{"text": prompt}]}]},
        timeout=settings.AI_TIMEOUT_SECONDS,
    )
    response.raise_for_status()
    parts = response.json()["candidates"][0]["content"]["parts"]
    return "".join(p.get("text", "") for p in parts).strip()


def ask_huggingface(prompt: str) -> str:
    if not settings.HUGGINGFACE_API_KEY:
        raise RuntimeError("HUGGINGFACE_API_KEY is not set")
    url = f"https://api-inference.huggingface.co/models/{settings.HUGGINGFACE_MODEL}"
    headers = {"Authorization": f"Bearer {settings.HUGGINGFACE_API_KEY}"}
    payload = {
        "inputs": prompt,
        "parameters": {"max_new_tokens": 500, "temperature": 0.7, "return_full_text": False},
    }
    response = requests.post(url, json=payload, headers=headers, timeout=settings.AI_TIMEOUT_SECONDS)
    response.raise_for_status()
    data = response.json()
    if isinstance(data, list):
        data = data[0]
    return data["generated_text"].strip()


BACKENDS: List[Tuple[str, Callable[[str], str]]] = [
    ("Gemini", ask_gemini),
    ("HuggingFace", ask_huggingface),
]


def get_completion(query: str, context: str = "", context_type: str = "general") -> str:
    if not is_academic_query(query):
        return OFF_TOPIC_REPLY
    prompt = build_prompt(query, context, context_type)
    for name, backend in BACKENDS:
        try:
            answer = backend(prompt)
        except (requests.RequestException, RuntimeError, KeyError, IndexError, TypeError, ValueError) as exc:
            logger.warning("%s failed: %s", name, exc)
            continue
        if answer:
            logger.info("Answered with %s", name)
            return answer
    logger.error("All AI backends failed")
    return UNAVAILABLE_REPLY


# ----------------------
# Features
# ----------------------
def syllabus_text(syllabus: dict, subject: Optional[dict]) -> str:
    name = subject.get("name") if subject else "Unknown subject"
    code = subject.get("code") if subject else "-"
    text = f"Syllabus Analysis for {name} ({code}):\n\n"
    units = syllabus.get("units") or []
    if units:
        text += "Units:\n"
        for index, unit in enumerate(units, start=1):
            text += f"Unit {index}: {unit.get('title')}\nDescription: {unit.get('description')}\n"
            topics = unit.get("topics") or []
            if topics:
                text += "Topics:\n"
                for t_index, topic in enumerate(topics, start=1):
                    text += f"  {t_index}. {topic.get('title')}\n"
                    if topic.get("description"):
                        text += f"     {topic['description']}\n"
            text += "\n"
    text += f"Exam Pattern: {syllabus.get('exam_pattern')}\n\n"
    books = syllabus.get("reference_books") or []
    if books:
        text += "Reference Books:\n"
        for index, book in enumerate(books, start=1):
            text += f'{index}. "{book.get("title")}" by {book.get("author")}\n'
    return text


def analyze_syllabus(text: str) -> Dict[str, str]:
    prompt = (
        "Analyze this syllabus and provide:\n"
        "1. Key topics and their importance\n"
        "2. Recommended study approach\n"
        "3. Potential challenging areas\n"
        "4. Estimated time needed for each unit\n"
        "5. Suggested supplementary resources\n\n"
        f"Syllabus:\n{text}"
    )
    return {"text": get_completion(prompt, "", "syllabus")}


def clear_doubt(question: str, content_text: str, content_type: str) -> str:
    if not is_academic_query(question):
        return OFF_TOPIC_DOUBT_REPLY
    return get_completion(question, content_text, content_type)


def study_recommendations(branch: str, year: int, semester: int) -> Dict[str, str]:
    prompt = (
        f"Generate study recommendations for a year {year} {branch} student in semester {semester}. Include:\n"
        "1. Recommended study schedule\n"
        "2. Key subjects to focus on\n"
        "3. Preparation strategy\n"
        "4. Resource recommendations\n"
        "5. Career development tips"
    )
    return {"text": get_completion(prompt, "", "general")}
