"""Code snippets embedded in notes.

Notes are markdown; every fenced code block with a language is a snippet.
Running a note executes each snippet through a :class:`SnippetRunner` and
places its captured output in an ``output`` block right below it.
"""

import logging
import os
import re
import subprocess
import tempfile
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence

from gitnotes.exceptions import ErrorCode, ExternalProcessError

logger = logging.getLogger(__name__)

OUTPUT_LANGUAGE = "output"
SNIPPET_TAG = "snippet"

_FENCE = re.compile(r"^ {0,3}(?P<fence>`{3,}|~{3,})\s*(?P<info>[^`\s]*)[^`]*$")


@dataclass(frozen=True)
class CodeBlock:
    """A fenced code block; ``start``/``end`` are the fence line indexes."""
    language: str
    source: str
    start: int
    end: int
    closed: bool = True


@dataclass(frozen=True)
class SnippetOutput:
    output: str
    replacement: Optional[str] = None


class SnippetRunner(Protocol):
    def run(self, language: str, source: str) -> str:
        """Execute ``source`` and return its captured output.

        Raises:
            ExternalProcessError: If no runner exists for ``language`` or
                the program fails
        """
        ...


def parse_code_blocks(content: str) -> List[CodeBlock]:
    lines = content.splitlines(keepends=True)
    blocks: List[CodeBlock] = []
    i = 0
    while i < len(lines):
        match = _FENCE.match(lines[i].rstrip("\r\n"))
        if not match:
            i += 1
            continue
        fence = match.group("fence")
        language = match.group("info").strip()
        body: List[str] = []
        j = i + 1
        closed = False
        while j < len(lines):
            stripped = lines[j].strip()
            if stripped.startswith(fence[0] * len(fence)) and not stripped.strip(fence[0]):
                closed = True
                break
            body.append(lines[j])
            j += 1
        end = j if closed else len(lines) - 1
        blocks.append(CodeBlock(language, "".join(body), i, end, closed))
        i = end + 1
    return blocks


def automatic_tags(content: str) -> List[str]:
    """Tags derived from a note's snippets: ``snippet`` plus each snippet language."""
    languages = [
        b.language for b in parse_code_blocks(content)
        if b.language and b.language != OUTPUT_LANGUAGE
        and "," not in b.language
    ]
    if not languages:
        return []
    return sorted({SNIPPET_TAG, *languages})


def _render_output(output: str) -> str:
    fence = "````" if "```" in output else "```"
    if output and not output.endswith("\n"):
        output += "\n"
    return f"{fence}{OUTPUT_LANGUAGE}\n{output}{fence}\n"


def run_snippets(content: str, runner: SnippetRunner) -> SnippetOutput:
    """Run every snippet in ``content`` and splice its output below it.

    An ``output`` block directly following a snippet (blank lines aside) is
    replaced; otherwise a new one is inserted.

    Returns:
        The concatenated output, and the rewritten content (None if the
        note has no snippets)
    """
    lines = content.splitlines(keepends=True)
    blocks = parse_code_blocks(content)
    result: List[str] = []
    outputs: List[str] = []
    cursor = 0
    i = 0
    while i < len(blocks):
        block = blocks[i]
        if not block.language or block.language == OUTPUT_LANGUAGE:
            i += 1
            continue

        output = runner.run(block.language, block.source)
        outputs.append(output)

        result.extend(lines[cursor:block.end + 1])
        cursor = block.end + 1
        if result and not result[-1].endswith("\n"):
            result[-1] += "\n"
        if not block.closed:
            result.append("```\n")

        following = blocks[i + 1] if i + 1 < len(blocks) else None
        if (
            following is not None
            and following.language == OUTPUT_LANGUAGE
            and all(not line.strip() for line in lines[cursor:following.start])
        ):
            result.extend(lines[cursor:following.start])
            result.append(_render_output(output))
            cursor = following.end + 1
            i += 2
        else:
            result.append("\n")
            result.append(_render_output(output))
            i += 1

    if not outputs:
        return SnippetOutput(output="", replacement=None)
    result.extend(lines[cursor:])
    return SnippetOutput(output="".join(outputs), replacement="".join(result))


class SubprocessSnippetRunner:
    """Runs snippets by writing them to a temporary file and invoking an interpreter.

    ``commands`` maps a language to an argv list in which ``{file}`` is
    replaced by the snippet file.
    """

    DEFAULT_COMMANDS: Dict[str, Sequence[str]] = {
        "python": ("python3", "{file}"),
        "bash": ("bash", "{file}"),
        "sh": ("sh", "{file}"),
    }
    SUFFIXES = {"python": ".py", "bash": ".sh", "sh": ".sh"}

    def __init__(
        self,
        commands: Optional[Dict[str, Sequence[str]]] = None,
        timeout: Optional[float] = 60,
    ):
        self.commands = dict(self.DEFAULT_COMMANDS)
        if commands:
            self.commands.update(commands)
        self.timeout = timeout

    def run(self, language: str, source: str) -> str:
        template = self.commands.get(language)
        if template is None:
            raise ExternalProcessError(
                f"No runner found for '{language}'",
                program=language, code=ErrorCode.EXTERNAL_PROCESS_MISSING,
            )

        fd, path = tempfile.mkstemp(suffix=self.SUFFIXES.get(language, ".txt"))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(source)
            argv = [part.replace("{file}", path) for part in template]
            logger.debug(f"Running {language} snippet: {' '.join(argv)}")
            try:
                result = subprocess.run(
                    argv, capture_output=True, text=True, timeout=self.timeout
                )
            except FileNotFoundError as e:
                raise ExternalProcessError(
                    f"'{argv[0]}' is not installed or not in PATH",
                    program=argv[0], code=ErrorCode.EXTERNAL_PROCESS_MISSING,
                ) from e
            except subprocess.TimeoutExpired as e:
                raise ExternalProcessError(
                    f"Snippet timed out after {self.timeout}s", program=argv[0]
                ) from e
        finally:
            os.unlink(path)

        output = result.stdout + result.stderr
        if result.returncode != 0:
            raise ExternalProcessError(
                f"Execution error: exit status {result.returncode}",
                program=argv[0], returncode=result.returncode, output=output,
            )
        return output
