"""HTTP API for generating quizzes, flashcards and mock tests."""

import atexit
import logging
import secrets
import string
from datetime import datetime
from typing import Dict, NamedTuple, Optional, Tuple

from flask import Blueprint, Flask, Response, current_app, jsonify, request, send_file
from flask_cors import CORS
from werkzeug.exceptions import RequestEntityTooLarge

from .config import Config, configure_logging
from .documents import count_pages, extract_text_from_pdf_bytes, render_mock_test_pdf
from .generator import (
    QUESTION_TYPES,
    GeminiGenerator,
    generate_mock_test,
    generate_quiz_content,
    sanitize_flashcards,
    sanitize_questions,
)
from .metering import FREE, MeteringEngine, UsageStatus
from .store import open_store

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 5 * 1024 * 1024
RECENT_LIMIT = 10
LEADERBOARD_LIMIT = 10
SHORT_ID_ALPHABET = string.ascii_lowercase + string.digits
TRUTHY = {"1", "true", "yes", "on"}

api = Blueprint("api", __name__)


class Services(NamedTuple):
    config: Config
    store: object
    generator: object
    metering: MeteringEngine


def services() -> Services:
    return current_app.extensions["studyquiz"]


def new_short_id() -> str:
    return "".join(secrets.choice(SHORT_ID_ALPHABET) for _ in range(6))


def to_int(value, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def clamp(value: int, low: int, high: int) -> int:
    return min(max(value, low), high)


def to_bool(value, default: bool) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in TRUTHY


def iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def error_response(message: str, code: str, status: int, **extra) -> Tuple[Response, int]:
    payload = {"error": message, "code": code}
    payload.update(extra)
    return jsonify(payload), status


def server_error(message: str, exc: Exception) -> Tuple[Response, int]:
    logger.exception("%s: %s", message, exc)
    return error_response(message, "server_error", 500, details=str(exc))


def limit_reached(usage: UsageStatus) -> Tuple[Response, int]:
    return error_response(
        "Generation limit reached",
        "generation_limit_reached",
        403,
        details="You have used all your free generations. Please subscribe to continue.",
        subscription_status=usage.status,
        remaining_free=usage.remaining_free,
    )


def quiz_link(quiz_id: str) -> str:
    return f"{services().config.public_base_url}/api/quiz/{quiz_id}"


def create_quiz(
    *,
    user_id: str,
    content_name: str,
    text: str,
    question_type: str,
    num_options: int,
    num_questions: int,
    include_flashcards: bool,
    source: str,
    details: Dict,
):
    """Run a gated quiz generation.

    Returns ``(usage, quiz)`` on success or ``(usage, None)`` when the user
    may not generate.
    """
    svc = services()
    usage = svc.metering.evaluate(user_id)
    if not usage.allowed:
        return usage, None

    content = generate_quiz_content(
        svc.generator,
        text,
        question_type,
        num_options,
        num_questions,
        include_flashcards,
    )
    quiz = {
        "quiz_id": new_short_id(),
        "content_name": content_name,
        "user_id": user_id,
        "created_at": svc.metering.now(),
        "source": source,
        "details": details,
        "questions": sanitize_questions(content["questions"]),
        "flashcards": sanitize_flashcards(content["flashcards"]),
    }
    svc.store.add_quiz(quiz)

    remaining = svc.metering.charge(user_id, usage)
    if remaining is None:
        svc.store.delete_quiz(quiz["quiz_id"])
        return UsageStatus(False, 0, FREE), None
    return usage._replace(remaining_free=remaining), quiz


@api.route("/api/health")
def health() -> Response:
    return jsonify({"ok": True})


@api.route("/api/user/subscription/<user_id>", methods=["GET"])
def subscription_info(user_id: str) -> Tuple[Response, int]:
    try:
        record = services().metering.describe(user_id)
        record["subscription_expiry"] = iso(record["subscription_expiry"])
        return jsonify(record), 200
    except ValueError as exc:
        return error_response(str(exc), "invalid_input", 400)
    except Exception as exc:
        return server_error("Server error", exc)


@api.route("/api/user/subscribe", methods=["POST"])
def subscribe() -> Tuple[Response, int]:
    body = request.get_json(silent=True) or {}
    user_id = str(body.get("userId") or body.get("user_id") or "").strip()
    plan = str(body.get("plan") or "").strip()
    if not user_id or not plan:
        return error_response("User ID and plan are required", "invalid_input", 400)

    try:
        expiry = services().metering.subscribe(user_id, plan)
        return (
            jsonify(
                {
                    "user_id": user_id,
                    "message": "Subscription successful",
                    "plan": plan,
                    "subscription_status": plan,
                    "subscription_expiry": iso(expiry),
                }
            ),
            200,
        )
    except ValueError as exc:
        return error_response(str(exc), "invalid_input", 400)
    except Exception as exc:
        return server_error("Server error", exc)


@api.route("/api/create_content", methods=["POST"])
def create_content() -> Tuple[Response, int]:
    body = request.get_json(silent=True) or {}
    text = body.get("text")
    question_type = str(body.get("question_type") or "").strip().lower()
    content_name = body.get("content_name")
    user_id = str(body.get("user_id") or "").strip()
    if not text or not question_type or not content_name or not user_id:
        return error_response(
            "Text, question_type, content_name, and user_id are required",
            "invalid_input",
            400,
        )
    if question_type not in QUESTION_TYPES:
        return error_response(
            "question_type must be true_false, multiple_choice, or mix",
            "invalid_input",
            400,
        )

    num_questions = clamp(to_int(body.get("num_questions"), 1), 1, 10)
    num_options = clamp(to_int(body.get("num_options"), 4), 2, 4)
    include_flashcards = to_bool(body.get("include_flashcards"), False)

    try:
        usage, quiz = create_quiz(
            user_id=user_id,
            content_name=str(content_name),
            text=str(text),
            question_type=question_type,
            num_options=num_options,
            num_questions=num_questions,
            include_flashcards=include_flashcards,
            source="text",
            details={},
        )
        if quiz is None:
            return limit_reached(usage)

        return (
            jsonify(
                {
                    "user_id": user_id,
                    "quiz_id": quiz["quiz_id"],
                    "quiz_link": quiz_link(quiz["quiz_id"]),
                    "content_name": quiz["content_name"],
                    "subscription_status": usage.status,
                    "remaining_free": usage.remaining_free,
                    "content": {"questions": quiz["questions"], "flashcards": quiz["flashcards"]},
                }
            ),
            201,
        )
    except ValueError as exc:
        return error_response(str(exc), "invalid_input", 400)
    except Exception as exc:
        return server_error("Error saving content", exc)


@api.route("/api/upload_pdf", methods=["POST"])
def upload_pdf() -> Tuple[Response, int]:
    upload = request.files.get("pdf")
    if upload is None or not upload.filename:
        return error_response("No PDF file uploaded", "invalid_input", 400)

    user_id = str(request.form.get("user_id") or "").strip()
    content_name = str(request.form.get("content_name") or "").strip()
    if not user_id or not content_name:
        return error_response("user_id and content_name are required", "invalid_input", 400)

    num_questions = clamp(to_int(request.form.get("num_questions"), 10), 1, 50)
    num_options = clamp(to_int(request.form.get("num_options"), 4), 2, 6)
    include_flashcards = to_bool(request.form.get("include_flashcards"), True)

    try:
        data = upload.read()
        if not data:
            raise ValueError("Uploaded file is empty.")
        total_pages = count_pages(data)
        start = max(1, to_int(request.args.get("startPage"), 1))
        end = min(total_pages, to_int(request.args.get("endPage"), total_pages))
        if start > end:
            return error_response(
                "Invalid page range",
                "invalid_input",
                400,
                totalPages=total_pages,
                requestedRange={"start": start, "end": end},
            )

        text = extract_text_from_pdf_bytes(data, start, end)
        if not text:
            raise ValueError("Uploaded PDF does not contain extractable text.")

        details = {
            "total_pages": total_pages,
            "processed_pages": {"start": start, "end": end},
            "num_questions": num_questions,
            "num_options": num_options,
            "include_flashcards": include_flashcards,
        }
        usage, quiz = create_quiz(
            user_id=user_id,
            content_name=content_name,
            text=text,
            question_type="multiple_choice",
            num_options=num_options,
            num_questions=num_questions,
            include_flashcards=include_flashcards,
            source="pdf",
            details=details,
        )
        if quiz is None:
            return limit_reached(usage)

        return (
            jsonify(
                {
                    "message": "Questions and flashcards generated successfully",
                    "user_id": user_id,
                    "quiz_id": quiz["quiz_id"],
                    "quiz_link": quiz_link(quiz["quiz_id"]),
                    "content_name": content_name,
                    "pdf_details": {
                        "totalPages": total_pages,
                        "processedPages": {"start": start, "end": end},
                        "numQuestions": num_questions,
                        "numOptions": num_options,
                        "includeFlashcards": include_flashcards,
                    },
                    "subscription_status": usage.status,
                    "remaining_free": usage.remaining_free,
                    "content": {"questions": quiz["questions"], "flashcards": quiz["flashcards"]},
                }
            ),
            201,
        )
    except ValueError as exc:
        return error_response(str(exc), "invalid_input", 400)
    except Exception as exc:
        return server_error("Error processing PDF", exc)


@api.route("/api/quiz/<quiz_id>", methods=["GET"])
def get_quiz(quiz_id: str) -> Tuple[Response, int]:
    try:
        quiz = services().store.get_quiz(quiz_id)
        if quiz is None:
            return error_response("Quiz not found", "not_found", 404)
        return jsonify({"quiz_id": quiz_id, "questions": quiz["questions"], "flashcards": quiz["flashcards"]}), 200
    except Exception as exc:
        return server_error("Server error", exc)


@api.route("/api/flashcards/<quiz_id>", methods=["GET"])
def get_flashcards(quiz_id: str) -> Tuple[Response, int]:
    try:
        quiz = services().store.get_quiz(quiz_id)
        if quiz is None:
            return error_response("Flashcards not found", "not_found", 404)
        return jsonify({"quiz_id": quiz_id, "flashcards": quiz["flashcards"]}), 200
    except Exception as exc:
        return server_error("Server error", exc)


@api.route("/api/submit_score", methods=["POST"])
def submit_score() -> Tuple[Response, int]:
    body = request.get_json(silent=True) or {}
    quiz_id = body.get("quizId")
    player_name = body.get("playerName")
    score = body.get("score")
    if not quiz_id or not player_name or score is None:
        return error_response("Missing required fields: quizId, playerName, score", "invalid_input", 400)

    try:
        if isinstance(score, bool):
            raise ValueError("score must be a number.")
        try:
            score = float(score)
        except (TypeError, ValueError):
            raise ValueError("score must be a number.")

        services().store.add_score(
            {
                "quiz_id": str(quiz_id),
                "player_name": str(player_name),
                "score": score,
                "created_at": services().metering.now(),
            }
        )
        return jsonify({"success": True, "message": "Score submitted successfully"}), 201
    except ValueError as exc:
        return error_response(str(exc), "invalid_input", 400)
    except Exception as exc:
        return server_error("Error saving score", exc)


@api.route("/api/leaderboard/<quiz_id>", methods=["GET"])
def leaderboard(quiz_id: str) -> Tuple[Response, int]:
    try:
        entries = services().store.leaderboard(quiz_id, LEADERBOARD_LIMIT)
        return jsonify({"quiz_id": quiz_id, "leaderboard": entries}), 200
    except Exception as exc:
        return server_error("Server error", exc)


def quiz_summary(quiz: Dict) -> Dict:
    return {
        "quiz_id": quiz.get("quiz_id"),
        "content_name": quiz.get("content_name"),
        "created_at": iso(quiz.get("created_at")),
    }


@api.route("/api/recent", methods=["GET"])
def recent() -> Tuple[Response, int]:
    try:
        quizzes = services().store.recent_quizzes(RECENT_LIMIT)
        return jsonify([quiz_summary(quiz) for quiz in quizzes]), 200
    except Exception as exc:
        return server_error("Error fetching recent content", exc)


@api.route("/api/recent/user/<user_id>", methods=["GET"])
def recent_for_user(user_id: str) -> Tuple[Response, int]:
    try:
        quizzes = services().store.recent_quizzes(RECENT_LIMIT, user_id=user_id)
        return jsonify([quiz_summary(quiz) for quiz in quizzes]), 200
    except Exception as exc:
        return server_error("Error fetching user recent content", exc)


@api.route("/api/mock-test/generate", methods=["POST"])
def generate_mock_test_route() -> Tuple[Response, int]:
    body = request.get_json(silent=True) or {}
    required = ["topic", "description", "difficulty", "num_questions", "user_id"]
    if any(not body.get(field) for field in required):
        return error_response("Missing required fields", "invalid_input", 400, required=required)

    user_id = str(body["user_id"]).strip()
    topic = str(body["topic"])
    difficulty = str(body["difficulty"])
    num_questions = clamp(to_int(body.get("num_questions"), 10), 5, 50)
    svc = services()

    try:
        usage = svc.metering.evaluate(user_id)
        if not usage.allowed:
            return limit_reached(usage)

        test_data = generate_mock_test(svc.generator, topic, str(body["description"]), difficulty, num_questions)
        test_id = new_short_id()
        pdf_name = f"mock_test_{test_id}.pdf"
        pdf_path = render_mock_test_pdf(test_data, svc.config.uploads_dir / pdf_name)
        try:
            svc.store.add_mock_test(
                {
                    "test_id": test_id,
                    "user_id": user_id,
                    "topic": topic,
                    "difficulty": difficulty,
                    "num_questions": num_questions,
                    "created_at": svc.metering.now(),
                    "test_data": test_data,
                    "pdf_path": pdf_name,
                }
            )
        except Exception:
            pdf_path.unlink(missing_ok=True)
            raise

        remaining = svc.metering.charge(user_id, usage)
        if remaining is None:
            svc.store.delete_mock_test(test_id)
            pdf_path.unlink(missing_ok=True)
            return limit_reached(UsageStatus(False, 0, FREE))

        return (
            jsonify(
                {
                    "message": "Mock test generated successfully",
                    "test_id": test_id,
                    "download_link": f"/api/mock-test/download/{test_id}",
                    "topic": topic,
                    "difficulty": difficulty,
                    "num_questions": num_questions,
                    "subscription_status": usage.status,
                    "remaining_free": remaining,
                }
            ),
            201,
        )
    except ValueError as exc:
        return error_response(str(exc), "invalid_input", 400)
    except Exception as exc:
        return server_error("Error generating mock test", exc)


@api.route("/api/mock-test/download/<test_id>", methods=["GET"])
def download_mock_test(test_id: str):
    svc = services()
    try:
        mock_test = svc.store.get_mock_test(test_id)
        if mock_test is None:
            return error_response("Mock test not found", "not_found", 404)

        pdf_path = svc.config.uploads_dir / mock_test["pdf_path"]
        if not pdf_path.is_file():
            return error_response("PDF file not found", "not_found", 404)

        return send_file(
            str(pdf_path.resolve()),
            mimetype="application/pdf",
            as_attachment=True,
            download_name=f"mock_test_{test_id}.pdf",
        )
    except Exception as exc:
        return server_error("Error downloading mock test", exc)


@api.route("/api/mock-test/user/<user_id>", methods=["GET"])
def mock_tests_for_user(user_id: str) -> Tuple[Response, int]:
    try:
        mock_tests = services().store.recent_mock_tests(user_id, RECENT_LIMIT)
        return (
            jsonify(
                [
                    {
                        "test_id": item.get("test_id"),
                        "topic": item.get("topic"),
                        "difficulty": item.get("difficulty"),
                        "num_questions": item.get("num_questions"),
                        "created_at": iso(item.get("created_at")),
                        "download_link": f"/api/mock-test/download/{item.get('test_id')}",
                    }
                    for item in mock_tests
                ]
            ),
            200,
        )
    except Exception as exc:
        return server_error("Error fetching mock tests", exc)


def file_too_large(_exc: RequestEntityTooLarge) -> Tuple[Response, int]:
    return error_response("Uploaded file exceeds the 5MB limit", "file_too_large", 413)


def create_app(config: Optional[Config] = None, store=None, generator=None) -> Flask:
    config = config or Config.from_env()
    if store is None:
        store = open_store(config)
    if generator is None:
        generator = GeminiGenerator(config.google_api_key, config.gemini_model, config.generator_timeout)

    app = Flask(__name__)
    CORS(app)
    app.config["MAX_CONTENT_LENGTH"] = MAX_UPLOAD_BYTES
    app.extensions["studyquiz"] = Services(config, store, generator, MeteringEngine(store))
    app.register_blueprint(api)
    app.register_error_handler(RequestEntityTooLarge, file_too_large)
    return app


def shutdown(app: Flask) -> None:
    svc = app.extensions.get("studyquiz")
    if svc is None:
        return
    svc.generator.close()
    svc.store.close()
    logger.info("Closed store and generator clients")


def main() -> None:
    config = Config.from_env()
    configure_logging(config.log_level)
    app = create_app(config)
    atexit.register(shutdown, app)
    app.run(host="0.0.0.0", port=config.port)


if __name__ == "__main__":
    main()
