"""Code-generation adapter: prompt the bridge, parse the manifest, write files."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from phasecraft.errors import FilesystemError
from phasecraft.execution.manifest import CodeManifest, GeneratedFile, parse_manifest_or_fallback
from phasecraft.execution.prompts import (
    ARCHITECTURE_EXCERPT_CHARS,
    MANIFEST_SCHEMA_EXAMPLE,
    TASK_EXECUTION_PROMPT,
)
from phasecraft.provider.bridge import ProviderBridge
from phasecraft.state.models import (
    Architecture,
    InterviewData,
    Phase,
    Project,
    Task,
    TaskStatus,
)

logger = logging.getLogger(__name__)

FileWrittenCallback = Callable[[GeneratedFile, Path], None]


@dataclass(slots=True)
class ExecutionContext:
    """Everything the model sees about one task."""

    project: Project
    phase: Phase
    task: Task
    interview: InterviewData
    architecture: Architecture


@dataclass(slots=True)
class CodeGenerationResult:
    manifest: CodeManifest
    provider: str
    model: str
    tokens_input: int = 0
    tokens_output: int = 0
    written_paths: list[Path] = field(default_factory=list)
    task_status: TaskStatus = TaskStatus.COMPLETED


class CodeGenerationAdapter:
    """Turns a task into files under `output_root` through one bridge call."""

    def __init__(
        self,
        bridge: ProviderBridge,
        *,
        output_root: Path,
        provider_name: str | None = None,
        model: str = "",
    ) -> None:
        self.bridge = bridge
        self.output_root = output_root
        self.provider_name = provider_name
        self.model = model

    def build_prompt(self, context: ExecutionContext) -> str:
        criteria = ""
        if context.task.acceptance_criteria:
            lines = "\n".join(f"- {item}" for item in context.task.acceptance_criteria)
            criteria = f"Acceptance criteria:\n{lines}\n"
        notes = ""
        if context.task.implementation_notes:
            notes = f"Implementation notes: {context.task.implementation_notes}\n"
        architecture = ""
        if context.architecture.content:
            excerpt = context.architecture.content[:ARCHITECTURE_EXCERPT_CHARS]
            architecture = f"ARCHITECTURE CONTEXT:\n{excerpt}\n\n"
        return TASK_EXECUTION_PROMPT.format(
            project_name=context.interview.project_name or context.project.name,
            problem_statement=context.interview.problem_statement,
            phase_number=context.phase.number,
            phase_title=context.phase.title,
            phase_objective=context.phase.objective,
            task_description=context.task.description,
            acceptance_criteria=criteria,
            implementation_notes=notes,
            architecture=architecture,
            schema=MANIFEST_SCHEMA_EXAMPLE,
        )

    def generate(
        self,
        context: ExecutionContext,
        *,
        on_file_written: FileWrittenCallback | None = None,
    ) -> CodeGenerationResult:
        """Call the model and materialize its files.

        Non-manifest output degrades to a single `output.md`. A write failure
        raises `FilesystemError`; files written before it are kept.
        """

        prompt = self.build_prompt(context)
        response = self.bridge.call(self.provider_name, self.model, prompt)
        logger.info(
            "Model answered task %s (provider=%s model=%s in=%d out=%d).",
            context.task.task_id,
            response.provider,
            response.model,
            response.tokens_input,
            response.tokens_output,
        )

        manifest = parse_manifest_or_fallback(response.content)
        written = self.materialize(manifest, on_file_written=on_file_written)
        if manifest.commands or manifest.tests:
            logger.info(
                "Task %s suggests %d command(s) and %d test(s); they are not run automatically.",
                context.task.task_id,
                len(manifest.commands),
                len(manifest.tests),
            )
        return CodeGenerationResult(
            manifest=manifest,
            provider=response.provider,
            model=response.model,
            tokens_input=response.tokens_input,
            tokens_output=response.tokens_output,
            written_paths=written,
        )

    def materialize(
        self,
        manifest: CodeManifest,
        *,
        on_file_written: FileWrittenCallback | None = None,
    ) -> list[Path]:
        written: list[Path] = []
        for generated in manifest.files:
            target = self.resolve_path(generated.path)
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(generated.content, encoding="utf-8")
            except (OSError, ValueError) as error:
                raise FilesystemError(
                    f"failed to write {generated.path}: {error}",
                    path=generated.path,
                ) from error
            written.append(target)
            logger.debug("Wrote %s (%d chars).", target, len(generated.content))
            if on_file_written is not None:
                on_file_written(generated, target)
        return written

    def resolve_path(self, relative: str) -> Path:
        """Map a manifest path under `output_root`, rejecting escapes."""

        candidate = Path(relative)
        if candidate.is_absolute():
            raise FilesystemError(f"absolute paths are not allowed: {relative}", path=relative)
        try:
            root = self.output_root.resolve()
            target = (root / candidate).resolve()
        except (OSError, ValueError) as error:
            raise FilesystemError(
                f"invalid output path {relative!r}: {error}",
                path=relative,
            ) from error
        if target == root or not target.is_relative_to(root):
            raise FilesystemError(f"path escapes the output root: {relative}", path=relative)
        return target
