import os
from dataclasses import dataclass
from typing import Dict, List

from .errors import UnsupportedLanguage


@dataclass(frozen=True)
class LanguageProfile:
    id: str
    sandbox_image: str
    file_name: str            # java needs Main.java, everything else main.<ext>
    run_command: str
    timeout_ms: int

    @property
    def file_extension(self) -> str:
        return os.path.splitext(self.file_name)[1]

    @property
    def timeout_sec(self) -> float:
        return self.timeout_ms / 1000.0


# ============================================================
# Supported languages
# ============================================================

LANGUAGE_PROFILES: Dict[str, LanguageProfile] = {
    "python": LanguageProfile(
        id="python",
        sandbox_image="python:3.9",
        file_name="main.py",
        run_command="python main.py",
        timeout_ms=10000,
    ),
    "javascript": LanguageProfile(
        id="javascript",
        sandbox_image="node:16",
        file_name="main.js",
        run_command="node main.js",
        timeout_ms=10000,
    ),
    "cpp": LanguageProfile(
        id="cpp",
        sandbox_image="gcc:latest",
        file_name="main.cpp",
        run_command="g++ -o main main.cpp && ./main",
        timeout_ms=15000,
    ),
    "c": LanguageProfile(
        id="c",
        sandbox_image="gcc:latest",
        file_name="main.c",
        run_command="gcc -o main main.c && ./main",
        timeout_ms=15000,
    ),
    "java": LanguageProfile(
        id="java",
        sandbox_image="openjdk:11",
        file_name="Main.java",
        run_command="javac Main.java && java Main",
        timeout_ms=15000,
    ),
}


def get_language_profile(language_id: str) -> LanguageProfile:
    """
    Look up a language profile.

    The image can be overridden per language with SANDBOX_IMAGE_<ID>
    (e.g. SANDBOX_IMAGE_PYTHON=python:3.12-slim).

    Raises:
        UnsupportedLanguage: unknown language id (a validation error).
    """
    profile = LANGUAGE_PROFILES.get(language_id)
    if profile is None:
        raise UnsupportedLanguage(language_id)

    override = os.getenv(f"SANDBOX_IMAGE_{language_id.upper()}")
    if override:
        return LanguageProfile(
            id=profile.id,
            sandbox_image=override,
            file_name=profile.file_name,
            run_command=profile.run_command,
            timeout_ms=profile.timeout_ms,
        )
    return profile


def supported_languages() -> List[str]:
    return list(LANGUAGE_PROFILES)
