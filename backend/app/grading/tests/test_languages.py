import pytest

from backend.app.grading.errors import UnsupportedLanguage
from backend.app.grading.languages import (
    LANGUAGE_PROFILES, get_language_profile, supported_languages,
)


@pytest.mark.parametrize(
    "language_id, image, file_name, command, timeout_ms",
    [
        ("python", "python:3.9", "main.py", "python main.py", 10000),
        ("javascript", "node:16", "main.js", "node main.js", 10000),
        ("cpp", "gcc:latest", "main.cpp", "g++ -o main main.cpp && ./main", 15000),
        ("c", "gcc:latest", "main.c", "gcc -o main main.c && ./main", 15000),
        ("java", "openjdk:11", "Main.java", "javac Main.java && java Main", 15000),
    ],
)
def test_reference_table(language_id, image, file_name, command, timeout_ms, monkeypatch):
    monkeypatch.delenv(f"SANDBOX_IMAGE_{language_id.upper()}", raising=False)

    profile = get_language_profile(language_id)

    assert profile.sandbox_image == image
    assert profile.file_name == file_name
    assert profile.run_command == command
    assert profile.timeout_ms == timeout_ms


def test_derived_fields():
    profile = LANGUAGE_PROFILES["java"]

    assert profile.file_extension == ".java"
    assert profile.timeout_sec == 15.0


def test_unknown_language_is_a_validation_error():
    with pytest.raises(UnsupportedLanguage) as exc:
        get_language_profile("cobol")

    assert exc.value.language_id == "cobol"
    assert exc.value.retryable is False


def test_image_override_from_env(monkeypatch):
    monkeypatch.setenv("SANDBOX_IMAGE_PYTHON", "python:3.12-slim")

    profile = get_language_profile("python")

    assert profile.sandbox_image == "python:3.12-slim"
    assert profile.run_command == "python main.py"
    assert LANGUAGE_PROFILES["python"].sandbox_image == "python:3.9"


def test_supported_languages():
    assert set(supported_languages()) == {"python", "javascript", "cpp", "c", "java"}
