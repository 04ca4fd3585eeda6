from pathlib import Path

import frontmatter

from ..schemas import ImportedSession
from .plaintext import PlaintextImporter


class MarkdownImporter:
    """
    Markdown transcript with optional YAML front matter

    Recognized metadata: session_id, duration_seconds and voice_analysis
    (avgWPM, totalFillerWords, longPausesCount). The body uses the plaintext
    line format; headings are ignored.
    """

    def __init__(self):
        self.body_importer = PlaintextImporter()

    def parse_file(self, file_path: Path) -> ImportedSession:
        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()

        return self.parse_content(content, file_path.stem)

    def parse_content(self, content: str, default_session_id: str) -> ImportedSession:
        post = frontmatter.loads(content)
        transcript = self.body_importer.parse_text(post.content)

        duration = post.metadata.get('duration_seconds')
        if duration is None:
            duration = self.body_importer._estimate_duration(transcript)

        prior_analytics = {}
        if isinstance(post.metadata.get('voice_analysis'), dict):
            prior_analytics['voice_analysis'] = post.metadata['voice_analysis']

        return ImportedSession(
            session_id=str(post.metadata.get('session_id') or default_session_id),
            transcript=transcript,
            duration_seconds=float(duration) if duration is not None else None,
            prior_analytics=prior_analytics,
            source='markdown'
        )
