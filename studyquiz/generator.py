"""Prompting the Gemini model and shaping what it returns."""

import json
import logging
import math
from typing import Dict, List

import requests

logger = logging.getLogger(__name__)

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models"
QUESTION_TYPES = {"true_false", "multiple_choice", "mix"}
PLACEHOLDER_QUESTION = {
    "question": "Error occurred. Is this a test?",
    "type": "true_false",
    "answer": "True",
}
PLACEHOLDER_FLASHCARD = {"term": "Error", "definition": "Try again later"}


class GenerationError(RuntimeError):
    """The model could not be reached or returned something unusable."""


class InvalidContentError(RuntimeError):
    """Generated content is missing required fields."""


class GeminiGenerator:
    def __init__(self, api_key: str, model: str, timeout: int = 120) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    def generate(self, prompt: str) -> str:
        if not self.api_key:
            raise GenerationError("GOOGLE_API_KEY is not set.")

        payload = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
        try:
            response = requests.post(
                f"{GEMINI_URL}/{self.model}:generateContent",
                headers={
                    "x-goog-api-key": self.api_key,
                    "Content-Type": "application/json",
                },
                json=payload,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise GenerationError(f"Gemini request failed: {exc}") from exc

        if response.status_code >= 400:
            raise GenerationError(f"Gemini request failed ({response.status_code}): {response.text}")

        try:
            body = response.json()
        except ValueError as exc:
            raise GenerationError(f"Gemini returned a non-JSON body: {exc}") from exc

        text = extract_text_from_response(body)
        if not text:
            raise GenerationError("Model response did not include text output.")
        return text

    def close(self) -> None:
        pass


def extract_text_from_response(response_json: Dict) -> str:
    texts: List[str] = []
    for candidate in response_json.get("candidates", []):
        for part in (candidate.get("content") or {}).get("parts", []):
            text = part.get("text")
            if isinstance(text, str):
                texts.append(text)
        if texts:
            break
    return "\n".join(texts).strip()


def parse_model_json(text: str) -> Dict:
    cleaned = text.replace("```json", "").replace("```", "").strip()
    parsed = json.loads(cleaned)
    if not isinstance(parsed, dict):
        raise ValueError("Model response is not a JSON object.")
    return parsed


def build_quiz_prompt(
    text: str,
    question_type: str,
    num_options: int,
    num_questions: int,
    include_flashcards: bool,
) -> str:
    flashcards = "and flashcards " if include_flashcards else ""
    return (
        f"Generate exactly {num_questions} quiz questions {flashcards}based on this text: \"{text}\".\n"
        f"Quiz type: \"{question_type}\" (true_false, multiple_choice, or mix).\n"
        f"For multiple_choice, provide {num_options} options, one correct.\n"
        "Return in JSON format, no extra text or markdown:\n"
        "{\n"
        "    \"questions\": [\n"
        "        {\"question\": \"Text\", \"type\": \"true_false or multiple_choice\", "
        "\"options\": [\"opt1\", ...] (for multiple_choice), \"answer\": \"correct\"}\n"
        "    ],\n"
        "    \"flashcards\": [\n"
        "        {\"term\": \"Term\", \"definition\": \"Definition\"}\n"
        "    ]\n"
        "}\n"
    )


def build_mock_test_prompt(topic: str, description: str, difficulty: str, num_questions: int) -> str:
    time_allowed = f"{math.ceil(num_questions * 2)} minutes"
    return (
        f"Generate a mock test with exactly {num_questions} questions for the following topic:\n"
        f"Topic: \"{topic}\"\n"
        f"Description: \"{description}\"\n"
        f"Difficulty Level: \"{difficulty}\"\n\n"
        "The questions should be challenging and appropriate for the specified difficulty level.\n"
        "Return in JSON format with no extra text:\n"
        "{\n"
        "    \"mock_test\": {\n"
        f"        \"topic\": \"{topic}\",\n"
        f"        \"difficulty\": \"{difficulty}\",\n"
        f"        \"total_questions\": {num_questions},\n"
        f"        \"time_allowed\": \"{time_allowed}\",\n"
        "        \"questions\": [\n"
        "            {\n"
        "                \"question_number\": 1,\n"
        "                \"question\": \"question text\",\n"
        "                \"options\": [\"A) option1\", \"B) option2\", \"C) option3\", \"D) option4\"],\n"
        "                \"correct_answer\": \"A\",\n"
        "                \"explanation\": \"detailed explanation\"\n"
        "            }\n"
        "        ]\n"
        "    }\n"
        "}"
    )


def placeholder_content(include_flashcards: bool) -> Dict:
    return {
        "questions": [dict(PLACEHOLDER_QUESTION)],
        "flashcards": [dict(PLACEHOLDER_FLASHCARD)] if include_flashcards else [],
    }


def generate_quiz_content(
    generator,
    text: str,
    question_type: str,
    num_options: int,
    num_questions: int,
    include_flashcards: bool,
) -> Dict:
    """Ask the model for questions and flashcards.

    Any failure here degrades to a single placeholder question (and
    flashcard) instead of failing the request.
    """
    prompt = build_quiz_prompt(text, question_type, num_options, num_questions, include_flashcards)
    try:
        content = parse_model_json(generator.generate(prompt))
        questions = content.get("questions") or []
        flashcards = (content.get("flashcards") or []) if include_flashcards else []
        if not isinstance(questions, list) or not isinstance(flashcards, list):
            raise ValueError("questions and flashcards must be lists.")
    except (GenerationError, ValueError) as exc:
        logger.error("Error generating content: %s", exc)
        return placeholder_content(include_flashcards)
    return {"questions": questions, "flashcards": flashcards}


def sanitize_questions(questions: List) -> List[Dict]:
    sanitized: List[Dict] = []
    for item in questions:
        if (
            not isinstance(item, dict)
            or not item.get("question")
            or not item.get("type")
            # false and 0 are valid answers
            or item.get("answer") in (None, "")
        ):
            logger.error("Invalid question structure: %r", item)
            raise InvalidContentError("Invalid question structure")

        question_type = str(item["type"])
        if question_type.lower() == "multiple_choice":
            raw_options = item.get("options")
            options = [str(o) for o in raw_options] if isinstance(raw_options, list) else []
        else:
            options = ["True", "False"]
        sanitized.append(
            {
                "question": str(item["question"]),
                "type": question_type,
                "options": options,
                "answer": str(item["answer"]),
            }
        )
    return sanitized


def sanitize_flashcards(flashcards: List) -> List[Dict]:
    sanitized: List[Dict] = []
    for item in flashcards:
        if not isinstance(item, dict) or not item.get("term") or not item.get("definition"):
            logger.error("Invalid flashcard structure: %r", item)
            raise InvalidContentError("Invalid flashcard structure")
        sanitized.append({"term": str(item["term"]), "definition": str(item["definition"])})
    return sanitized


def validate_mock_test(data: Dict) -> Dict:
    mock_test = data.get("mock_test")
    if not isinstance(mock_test, dict):
        raise InvalidContentError("Model response did not include a mock_test object.")
    questions = mock_test.get("questions")
    if not isinstance(questions, list) or not questions:
        raise InvalidContentError("Mock test did not include any questions.")
    for item in questions:
        if not isinstance(item, dict) or not item.get("question") or not isinstance(item.get("options"), list):
            logger.error("Invalid mock test question: %r", item)
            raise InvalidContentError("Invalid mock test question structure")
    return mock_test


def generate_mock_test(generator, topic: str, description: str, difficulty: str, num_questions: int) -> Dict:
    prompt = build_mock_test_prompt(topic, description, difficulty, num_questions)
    raw_text = generator.generate(prompt)
    try:
        parsed = parse_model_json(raw_text)
    except ValueError as exc:
        raise GenerationError(f"Model returned invalid JSON: {exc}") from exc

    mock_test = validate_mock_test(parsed)
    mock_test.setdefault("topic", topic)
    mock_test.setdefault("difficulty", difficulty)
    mock_test.setdefault("total_questions", len(mock_test["questions"]))
    mock_test.setdefault("time_allowed", f"{math.ceil(num_questions * 2)} minutes")
    return mock_test
