"""Topic files: Markdown with optional YAML front matter."""

from pathlib import Path

import frontmatter

from forge.models import Topic

# front matter keys that override CLI defaults
OVERRIDE_KEYS = ("max_rounds", "threshold", "models")


def parse_topic_file(file_path: Path) -> tuple[Topic, dict]:
    """Parse a topic file.

    The front matter may carry ``title`` and ``constraints`` (a list or a
    single string). Without a title, the first Markdown heading or the file
    stem is used.

    Returns:
        (topic, overrides) where overrides holds only the recognised
        ``max_rounds`` / ``threshold`` / ``models`` keys.
    """
    post = frontmatter.load(str(file_path))
    body = post.content.strip()
    metadata = dict(post.metadata)

    title = str(metadata.get("title", "")).strip()
    if not title:
        first_line = body.splitlines()[0] if body else ""
        title = first_line.lstrip("#").strip() if first_line.startswith("#") else file_path.stem
        if first_line.startswith("#"):
            body = body[len(first_line):].strip()

    constraints = metadata.get("constraints", [])
    if isinstance(constraints, str):
        constraints = [constraints]

    overrides = {key: metadata[key] for key in OVERRIDE_KEYS if key in metadata}
    return Topic(title=title, description=body, constraints=[str(c) for c in constraints]), overrides
