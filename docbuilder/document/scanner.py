from __future__ import annotations

from typing import Iterable, Iterator

from docbuilder.document.model import Block, DocumentTree, Occurrence, Paragraph, TextRun


def placeholder_token(key: str) -> str:
    return '{{' + str(key) + '}}'


def iter_text_runs(blocks: Iterable[Block]) -> Iterator[TextRun]:
    for block in blocks:
        if isinstance(block, Paragraph):
            for element in block.elements:
                if isinstance(element, TextRun):
                    yield element
            continue
        for row in block.rows:
            for cell in row.cells:
                yield from iter_text_runs(cell.content)


def _occurrences_in_run(run: TextRun, token: str) -> Iterator[Occurrence]:
    position = 0
    while True:
        found = run.content.find(token, position)
        if found < 0:
            return
        start = run.start + found
        yield Occurrence(start=start, end=start + len(token), token=token)
        position = found + len(token)


def scan_placeholders(snapshot: DocumentTree, token: str) -> list[Occurrence]:
    """Every exact, case-sensitive match of ``token``, in document order.

    Matches are found inside single text runs only; tables are searched
    through every cell, including tables nested in cells.
    """
    if not token:
        return []
    occurrences: list[Occurrence] = []
    for run in iter_text_runs(snapshot.body):
        occurrences.extend(_occurrences_in_run(run, token))
    return occurrences


def scan_many(snapshot: DocumentTree, tokens: Iterable[str]) -> list[Occurrence]:
    wanted = [token for token in dict.fromkeys(tokens) if token]
    occurrences: list[Occurrence] = []
    for run in iter_text_runs(snapshot.body):
        for token in wanted:
            occurrences.extend(_occurrences_in_run(run, token))
    occurrences.sort(key=lambda item: item.start)
    return occurrences


def find_text_run(snapshot: DocumentTree, text: str) -> TextRun | None:
    needle = str(text or '').strip().lower()
    if not needle:
        return None
    for run in iter_text_runs(snapshot.body):
        if needle in run.content.strip().lower():
            return run
    return None
