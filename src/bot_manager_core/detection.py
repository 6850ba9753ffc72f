from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional, Tuple

from .compose import find_compose_file
from .models import DetectionResult

logger = logging.getLogger(__name__)

_COMPOSE_DB_MARKERS = ("postgres", "mysql", "mariadb", "mongo", "redis", "sqlite", "prisma")

_DEPENDENCY_DB_MARKERS = (
    "mongoose",
    "pg",
    "mysql",
    "sequelize",
    "prisma",
    "typeorm",
    "knex",
    "mongodb",
    "redis",
    "sqlite3",
    "sqlalchemy",
    "pymongo",
    "psycopg",
    "pymysql",
    "motor",
    "databases",
    "tortoise-orm",
)

_PYTHON_ENTRIES = ("main.py", "bot.py", "app.py", "run.py")


def _detect_language(repo_path: Path) -> Tuple[str, Optional[str], Optional[str]]:
    package_json = repo_path / "package.json"
    if package_json.exists():
        package_manager = "npm"
        if (repo_path / "pnpm-lock.yaml").exists():
            package_manager = "pnpm"
        elif (repo_path / "yarn.lock").exists():
            package_manager = "yarn"
        entry_point: Optional[str] = None
        try:
            pkg = json.loads(package_json.read_text(encoding="utf-8"))
            if not pkg.get("main") and not (pkg.get("scripts") or {}).get("start"):
                entry_point = "index.js"
        except (ValueError, OSError):
            pass
        return "nodejs", package_manager, entry_point

    for marker in ("requirements.txt", "Pipfile", "pyproject.toml", "setup.py"):
        if (repo_path / marker).exists():
            package_manager = "poetry" if marker in {"Pipfile", "pyproject.toml"} else "pip"
            entry = next((e for e in _PYTHON_ENTRIES if (repo_path / e).exists()), None)
            return "python", package_manager, entry

    if (repo_path / "go.mod").exists():
        return "go", "go", None
    if (repo_path / "pom.xml").exists():
        return "java", "maven", None
    if (repo_path / "build.gradle").exists() or (repo_path / "build.gradle.kts").exists():
        return "java", "gradle", None

    return "unknown", None, None


def _dependencies_use_database(repo_path: Path) -> bool:
    package_json = repo_path / "package.json"
    if package_json.exists():
        try:
            pkg = json.loads(package_json.read_text(encoding="utf-8"))
            deps = {**(pkg.get("dependencies") or {}), **(pkg.get("devDependencies") or {})}
            names = [d.lower() for d in deps]
            if any(marker in name for marker in _DEPENDENCY_DB_MARKERS for name in names):
                return True
        except (ValueError, OSError):
            pass

    requirements = repo_path / "requirements.txt"
    if requirements.exists():
        try:
            content = requirements.read_text(encoding="utf-8").lower()
        except OSError:
            return False
        return any(marker in content for marker in _DEPENDENCY_DB_MARKERS)

    return False


def detect_bot_type(repo_path: Path) -> DetectionResult:
    bot_type = "unknown"
    has_dockerfile = (repo_path / "Dockerfile").exists()
    has_compose = False
    has_database = False
    entry_point: Optional[str] = None
    package_manager: Optional[str] = None

    if has_dockerfile:
        bot_type = "dockerfile"

    compose_path = find_compose_file(repo_path)
    if compose_path is not None:
        has_compose = True
        bot_type = "compose"
        content = compose_path.read_text(encoding="utf-8", errors="ignore").lower()
        has_database = any(marker in content for marker in _COMPOSE_DB_MARKERS)

    if bot_type in {"unknown", "dockerfile"}:
        language, package_manager, entry_point = _detect_language(repo_path)
        if bot_type == "unknown":
            bot_type = language

    if not has_database:
        has_database = _dependencies_use_database(repo_path)

    result = DetectionResult(
        type=bot_type,
        has_dockerfile=has_dockerfile,
        has_compose=has_compose,
        has_database=has_database,
        entry_point=entry_point,
        package_manager=package_manager,
    )
    logger.info(
        "Detected bot type=%s dockerfile=%s compose=%s database=%s",
        result.type,
        result.has_dockerfile,
        result.has_compose,
        result.has_database,
    )
    return result


def generate_dockerfile(detection: DetectionResult) -> str:
    if detection.type == "python":
        return _python_dockerfile(detection)
    if detection.type == "go":
        return _GO_DOCKERFILE
    if detection.type == "java":
        return _java_dockerfile(detection)
    return _nodejs_dockerfile(detection)


def _nodejs_dockerfile(detection: DetectionResult) -> str:
    copy_lock = "COPY package*.json ./"
    install = "npm ci --only=production"
    if detection.package_manager == "yarn":
        copy_lock = "COPY package.json yarn.lock ./"
        install = "yarn install --production --frozen-lockfile"
    elif detection.package_manager == "pnpm":
        copy_lock = "COPY package.json pnpm-lock.yaml ./"
        install = "pnpm install --prod --frozen-lockfile"

    return (
        "FROM node:20-alpine\n\n"
        "WORKDIR /app\n\n"
        f"{copy_lock}\n"
        f"RUN {install}\n\n"
        "COPY . .\n\n"
        "RUN mkdir -p /app/data\n\n"
        'CMD ["npm", "start"]\n'
    )


def _python_dockerfile(detection: DetectionResult) -> str:
    entry = detection.entry_point or "main.py"
    if detection.package_manager == "poetry":
        install = (
            "RUN pip install poetry\n"
            "COPY pyproject.toml poetry.lock* ./\n"
            "RUN poetry config virtualenvs.create false && poetry install --no-root --no-interaction --no-ansi\n"
        )
    else:
        install = "COPY requirements.txt ./\nRUN pip install --no-cache-dir -r requirements.txt\n"

    return (
        "FROM python:3.11-slim\n\n"
        "WORKDIR /app\n\n"
        f"{install}\n"
        "COPY . .\n\n"
        "RUN mkdir -p /app/data\n\n"
        f'CMD ["python", "{entry}"]\n'
    )


_GO_DOCKERFILE = (
    "FROM golang:1.22-alpine AS build\n\n"
    "WORKDIR /src\n"
    "COPY go.mod go.sum* ./\n"
    "RUN go mod download\n"
    "COPY . .\n"
    "RUN CGO_ENABLED=0 go build -o /bot .\n\n"
    "FROM alpine:3.19\n"
    "WORKDIR /app\n"
    "COPY --from=build /bot /app/bot\n"
    "RUN mkdir -p /app/data\n"
    'CMD ["/app/bot"]\n'
)


def _java_dockerfile(detection: DetectionResult) -> str:
    if detection.package_manager == "gradle":
        builder = "FROM gradle:8-jdk17 AS build\nWORKDIR /src\nCOPY . .\nRUN gradle build --no-daemon -x test\n"
        artifact = "/src/build/libs/*.jar"
    else:
        builder = "FROM maven:3-eclipse-temurin-17 AS build\nWORKDIR /src\nCOPY . .\nRUN mvn -q package -DskipTests\n"
        artifact = "/src/target/*.jar"

    return (
        f"{builder}\n"
        "FROM eclipse-temurin:17-jre\n"
        "WORKDIR /app\n"
        f"COPY --from=build {artifact} /app/bot.jar\n"
        "RUN mkdir -p /app/data\n"
        'CMD ["java", "-jar", "/app/bot.jar"]\n'
    )
