import logging

from fastapi import APIRouter, Depends, HTTPException

from backend.app.grading.errors import SandboxCreationError, UnsupportedLanguage
from backend.app.grading.judge_core import run_test_cases
from backend.app.grading.languages import supported_languages
from backend.app.grading.schemas import ExecutePayload, TestPayload
from backend.app.grading.services import GradingServices, get_services

router = APIRouter(prefix="/code", tags=["Code Execution"])
logger = logging.getLogger(__name__)


async def _run(services: GradingServices, student_id: str, language: str, code: str, test_cases, stdin=""):
    services.rate_limiter.check(student_id)

    if not code.strip():
        raise HTTPException(status_code=400, detail="Code and language are required")

    try:
        evaluation = await run_test_cases(language, code, test_cases, services.executor, stdin=stdin)
    except UnsupportedLanguage as e:
        raise HTTPException(
            status_code=400,
            detail=f"{e}. Supported: {', '.join(supported_languages())}",
        )
    except SandboxCreationError as e:
        logger.error(f"Code execution unavailable for {student_id}: {e}")
        raise HTTPException(status_code=503, detail="Code execution is temporarily unavailable")

    return evaluation.as_dict()


@router.post("/execute")
async def execute_code(payload: ExecutePayload, services: GradingServices = Depends(get_services)):
    """Run code once with the given stdin (no grading)."""
    return await _run(services, payload.student_id, payload.language, payload.code, [], stdin=payload.input)


@router.post("/test")
async def test_code(payload: TestPayload, services: GradingServices = Depends(get_services)):
    """Run code against caller-supplied test cases."""
    if not payload.test_cases:
        raise HTTPException(status_code=400, detail="Code, language, and test cases are required")
    return await _run(services, payload.student_id, payload.language, payload.code, payload.test_cases)


@router.get("/languages")
def list_languages():
    return {"languages": supported_languages()}
