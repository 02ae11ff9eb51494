from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

# Heuristic, not a parser: the first `class <Identifier>` in the text wins,
# including one that sits inside a comment or string literal.
_JAVA_CLASS_PATTERN = re.compile(r"\bclass\s+([A-Za-z_$][A-Za-z0-9_$]*)")
JAVA_DEFAULT_CLASS = "Main"

_JAVA_ENTRY_TEMPLATE = """
public class Main {{
    public static void main(String[] args) {{
        {body}
    }}
}}
"""


@dataclass
class PreparedJob:
    source_path: Path
    source_text: str
    run_argv: list[str]
    compile_argv: list[str] | None = None
    artifacts: list[Path] = field(default_factory=list)
    env: dict[str, str] | None = None


@dataclass(frozen=True)
class Toolchain:
    language: str
    prepare: Callable[[str, Path, str], PreparedJob]


def detect_java_class_name(source: str) -> str | None:
    match = _JAVA_CLASS_PATTERN.search(str(source or ""))
    return match.group(1) if match else None


def wrap_java_snippet(source: str) -> str:
    return _JAVA_ENTRY_TEMPLATE.format(body=source)


def prepare_java(source: str, job_dir: Path, job_id: str) -> PreparedJob:
    # javac requires the file name to match the public type name.
    class_name = detect_java_class_name(source)
    if class_name is None:
        class_name = JAVA_DEFAULT_CLASS
        source = wrap_java_snippet(source)
    source_path = job_dir / f"{class_name}.java"
    return PreparedJob(
        source_path=source_path,
        source_text=source,
        compile_argv=["javac", "-d", str(job_dir), str(source_path)],
        run_argv=["java", "-cp", str(job_dir), class_name],
        artifacts=[job_dir / f"{class_name}.class"],
    )


def prepare_cpp(source: str, job_dir: Path, job_id: str) -> PreparedJob:
    source_path = job_dir / f"{job_id}.cpp"
    binary_path = job_dir / f"{job_id}.out"
    return PreparedJob(
        source_path=source_path,
        source_text=source,
        compile_argv=["g++", str(source_path), "-o", str(binary_path)],
        run_argv=[str(binary_path)],
        artifacts=[binary_path],
    )


def prepare_go(source: str, job_dir: Path, job_id: str) -> PreparedJob:
    source_path = job_dir / f"{job_id}.go"
    # `go run` builds in its own go-build* work dir; keep it inside the job dir
    # so a killed run cannot leave the binary behind.
    env = dict(os.environ)
    env["GOTMPDIR"] = str(job_dir)
    return PreparedJob(
        source_path=source_path,
        source_text=source,
        run_argv=["go", "run", str(source_path)],
        env=env,
    )


DEFAULT_TOOLCHAINS: dict[str, Toolchain] = {
    "java": Toolchain(language="java", prepare=prepare_java),
    "cpp": Toolchain(language="cpp", prepare=prepare_cpp),
    "go": Toolchain(language="go", prepare=prepare_go),
}
