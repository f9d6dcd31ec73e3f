"""Error codes shown to learners and written to the logs.

Format: NS-<AREA>-<NNN>. The code is what a learner quotes when they report
a problem, so messages stay friendly and never include raw exception text.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import openai
from sqlalchemy import exc as sa_exc

LOGGER = logging.getLogger("notesnap")


@dataclass(frozen=True)
class ErrorSpec:
    status: int
    retryable: bool
    message: str


ERROR_CODES: Dict[str, ErrorSpec] = {
    # Auth
    "NS-AUTH-001": ErrorSpec(401, False, "Email or password is incorrect."),
    "NS-AUTH-002": ErrorSpec(403, False, "Please confirm your email address before signing in."),
    "NS-AUTH-010": ErrorSpec(409, False, "An account with this email already exists."),
    "NS-AUTH-011": ErrorSpec(400, False, "Password must be at least 8 characters."),
    "NS-AUTH-012": ErrorSpec(400, False, "That email address doesn't look right."),
    "NS-AUTH-020": ErrorSpec(429, True, "Too many reset requests. Please wait a few minutes."),
    "NS-AUTH-021": ErrorSpec(400, False, "This reset link has expired. Request a new one."),
    "NS-AUTH-030": ErrorSpec(401, False, "Your session has expired. Please sign in again."),
    "NS-AUTH-090": ErrorSpec(401, False, "Please sign in to continue."),
    "NS-AUTH-091": ErrorSpec(403, False, "You don't have access to this page."),
    "NS-AUTH-099": ErrorSpec(500, True, "Sign-in failed. Please try again."),
    # Validation
    "NS-VAL-001": ErrorSpec(400, False, "A required field is missing."),
    "NS-VAL-002": ErrorSpec(400, False, "Some of the values entered are not valid."),
    "NS-VAL-003": ErrorSpec(400, False, "A value is out of range."),
    # Database
    "NS-DB-001": ErrorSpec(503, True, "We couldn't reach the database. Please try again shortly."),
    "NS-DB-002": ErrorSpec(500, True, "Saving or loading your data failed."),
    "NS-DB-003": ErrorSpec(503, False, "The database is not configured."),
    # AI
    "NS-AI-001": ErrorSpec(503, False, "AI features are not available right now."),
    "NS-AI-002": ErrorSpec(429, True, "The AI service is busy. Please try again in a minute."),
    "NS-AI-003": ErrorSpec(429, True, "You've reached the hourly AI limit. Please try again later."),
    "NS-AI-004": ErrorSpec(504, True, "The AI took too long to respond. Please try again."),
    "NS-AI-005": ErrorSpec(503, True, "We couldn't connect to the AI service."),
    "NS-AI-010": ErrorSpec(502, True, "The AI reply could not be read. Please try again."),
    "NS-AI-011": ErrorSpec(502, True, "The AI reply was incomplete. Please try again."),
    # Courses
    "NS-CRS-001": ErrorSpec(404, False, "Course not found."),
    "NS-CRS-010": ErrorSpec(500, True, "The course could not be created."),
    "NS-CRS-013": ErrorSpec(400, False, "Add some notes or images to build a course from."),
    "NS-CRS-043": ErrorSpec(404, False, "Lesson not found."),
    "NS-CRS-050": ErrorSpec(500, True, "Course generation failed. You can retry from the course page."),
    "NS-CRS-054": ErrorSpec(500, True, "Generating the remaining lessons failed. Please try again."),
    "NS-CRS-055": ErrorSpec(409, False, "Finish generating this course before adding more notes."),
    # SRS
    "NS-SRS-001": ErrorSpec(404, False, "Review card not found."),
    "NS-SRS-002": ErrorSpec(500, True, "Your review could not be saved."),
    "NS-SRS-003": ErrorSpec(400, False, "Ratings must be between 1 and 4."),
    # Practice
    "NS-PRC-001": ErrorSpec(404, False, "Practice session not found."),
    "NS-PRC-004": ErrorSpec(409, False, "This practice session is already finished."),
    "NS-PRC-010": ErrorSpec(500, True, "Practice questions could not be generated."),
    # Homework
    "NS-HW-001": ErrorSpec(404, False, "Homework session not found."),
    "NS-HW-020": ErrorSpec(500, True, "We couldn't generate a hint. Here's a general one instead."),
    "NS-HW-030": ErrorSpec(400, False, "Add the task you want checked, as text or a photo."),
    "NS-HW-031": ErrorSpec(500, True, "Your homework couldn't be checked. Please try again."),
    # Exams
    "NS-EXM-001": ErrorSpec(404, False, "Exam not found."),
    "NS-EXM-002": ErrorSpec(400, False, "Exams need between 5 and 50 questions."),
    "NS-EXM-003": ErrorSpec(400, False, "The time limit must be between 5 and 180 minutes."),
    "NS-EXM-004": ErrorSpec(409, False, "This exam has already been submitted."),
    "NS-EXM-005": ErrorSpec(409, False, "Start the exam before submitting it."),
    "NS-EXM-010": ErrorSpec(500, True, "The exam could not be generated."),
    # Concepts
    "NS-CON-010": ErrorSpec(500, True, "Concepts could not be extracted from this course."),
    # Study plan
    "NS-PLN-001": ErrorSpec(400, False, "There are no study days left before the exam."),
    "NS-PLN-002": ErrorSpec(500, True, "The study plan could not be saved."),
    "NS-PLN-003": ErrorSpec(400, False, "Daily study time must be more than zero minutes."),
    # Upload
    "NS-UPL-001": ErrorSpec(413, False, "That file is too large."),
    "NS-UPL-002": ErrorSpec(400, False, "That file type isn't supported."),
    "NS-UPL-005": ErrorSpec(400, False, "That image couldn't be read. Try exporting it as JPEG."),
    "NS-UPL-010": ErrorSpec(500, True, "Uploading the file failed."),
    "NS-UPL-020": ErrorSpec(400, False, "That document has no readable text."),
    "NS-UPL-021": ErrorSpec(400, False, "That document couldn't be opened. Try saving it again as .docx or .pptx."),
    # Export
    "NS-EXP-001": ErrorSpec(500, True, "The export could not be created."),
    # System
    "NS-SYS-001": ErrorSpec(500, True, "Something went wrong. Please try again."),
}

UNKNOWN_CODE = "NS-SYS-001"


def get_spec(code: str) -> ErrorSpec:
    return ERROR_CODES.get(code) or ERROR_CODES[UNKNOWN_CODE]


class AppError(Exception):
    """An error with a catalogue code attached."""

    def __init__(self, code: str, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        spec = get_spec(code)
        self.code = code if code in ERROR_CODES else UNKNOWN_CODE
        self.message = message or spec.message
        self.retryable = spec.retryable
        self.status = spec.status
        self.details = details or {}
        super().__init__(f"[{self.code}] {self.message}")


def error_response(code: str, message: Optional[str] = None) -> Dict[str, Any]:
    spec = get_spec(code)
    return {
        "success": False,
        "error": {
            "code": code if code in ERROR_CODES else UNKNOWN_CODE,
            "message": message or spec.message,
            "retryable": spec.retryable,
        },
    }


def map_exception(exc: BaseException) -> AppError:
    if isinstance(exc, AppError):
        return exc
    if isinstance(exc, sa_exc.OperationalError):
        code = "NS-DB-001"
    elif isinstance(exc, sa_exc.SQLAlchemyError):
        code = "NS-DB-002"
    elif isinstance(exc, openai.RateLimitError):
        code = "NS-AI-002"
    elif isinstance(exc, openai.APITimeoutError):
        code = "NS-AI-004"
    elif isinstance(exc, openai.APIConnectionError):
        code = "NS-AI-005"
    elif isinstance(exc, openai.AuthenticationError):
        code = "NS-AI-001"
    else:
        code = UNKNOWN_CODE
    return AppError(code, details={"error": type(exc).__name__})


def log_app_error(err: AppError, component: str, **ctx: Any) -> None:
    LOGGER.error(
        err.message,
        extra={"ctx": {"component": component, "code": err.code, "error": err.details.get("error", ""), **ctx}},
    )


_AUTH_MESSAGE_CODES = (
    ("invalid login credentials", "NS-AUTH-001"),
    ("email not confirmed", "NS-AUTH-002"),
    ("already registered", "NS-AUTH-010"),
    ("already exists", "NS-AUTH-010"),
    ("password should be at least", "NS-AUTH-011"),
    ("weak password", "NS-AUTH-011"),
    ("invalid email", "NS-AUTH-012"),
    ("unable to validate email", "NS-AUTH-012"),
    ("rate limit", "NS-AUTH-020"),
    ("expired", "NS-AUTH-021"),
    ("jwt", "NS-AUTH-030"),
    ("session", "NS-AUTH-030"),
)


def map_auth_error(exc: BaseException) -> AppError:
    """Turn a Supabase Auth failure into an NS-AUTH code by its message."""
    if isinstance(exc, AppError):
        return exc
    msg = str(getattr(exc, "message", "") or exc).lower()
    for needle, code in _AUTH_MESSAGE_CODES:
        if needle in msg:
            return AppError(code, details={"error": type(exc).__name__})
    if getattr(exc, "status", None) == 429:
        return AppError("NS-AUTH-020", details={"error": type(exc).__name__})
    return AppError("NS-AUTH-099", details={"error": type(exc).__name__})
