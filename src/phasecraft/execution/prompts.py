"""Prompt template for task code generation."""

from __future__ import annotations

ARCHITECTURE_EXCERPT_CHARS = 2000

MANIFEST_SCHEMA_EXAMPLE = """\
{
  "explanation": "Brief explanation of your approach",
  "files": [
    {
      "path": "relative/path/to/file.ext",
      "content": "file content here",
      "language": "programming language (optional)"
    }
  ],
  "commands": [
    {"command": "shell command to run", "directory": "optional directory"}
  ],
  "tests": [
    {"name": "test description", "command": "command to run the test"}
  ]
}"""

TASK_EXECUTION_PROMPT = """\
You are an expert software developer implementing one task of a larger project.

PROJECT CONTEXT:
Project: {project_name}
Problem: {problem_statement}

PHASE {phase_number}: {phase_title}
Objective: {phase_objective}

TASK: {task_description}
{acceptance_criteria}{implementation_notes}
{architecture}INSTRUCTIONS:
1. Analyze the task and the architecture context.
2. Generate working code that implements the task.
3. Use paths relative to the project root.
4. Return ONLY valid JSON with the following structure:

{schema}
"""
