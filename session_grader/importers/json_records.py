import json
from pathlib import Path
from typing import Union

from pydantic import ValidationError

from ..errors import TranscriptError
from ..schemas import ImportedSession, Transcript
from .markdown import MarkdownImporter
from .plaintext import PlaintextImporter


class JsonImporter:
    """
    JSON transcript: either a bare list of {speaker, text, timestamp?} records
    or an object with 'transcript' plus optional session_id, duration_seconds
    and voice_analysis.
    """

    def parse_file(self, file_path: Path) -> ImportedSession:
        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()
        return self.parse_content(content, file_path.stem)

    def parse_content(self, content: str, default_session_id: str) -> ImportedSession:
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise TranscriptError(f"Invalid transcript JSON: {e}")

        if isinstance(data, list):
            data = {'transcript': data}
        if not isinstance(data, dict) or not isinstance(data.get('transcript'), list):
            raise TranscriptError("Transcript JSON must be a list of utterances or contain a 'transcript' list")

        prior_analytics = {}
        if isinstance(data.get('voice_analysis'), dict):
            prior_analytics['voice_analysis'] = data['voice_analysis']

        try:
            transcript = Transcript.from_records(data['transcript'])
        except ValidationError as e:
            raise TranscriptError(f"Invalid transcript: {e}")

        return ImportedSession(
            session_id=str(data.get('session_id') or default_session_id),
            transcript=transcript,
            duration_seconds=data.get('duration_seconds'),
            prior_analytics=prior_analytics,
            source='json'
        )


SUPPORTED_SUFFIXES = ('.json', '.md', '.txt')


def parse_session_content(name: str, content: Union[str, bytes]) -> ImportedSession:
    """Pick the importer from the file name's suffix"""
    if isinstance(content, bytes):
        content = content.decode('utf-8')
    path = Path(name)
    if path.suffix == '.json':
        return JsonImporter().parse_content(content, path.stem)
    if path.suffix == '.md':
        return MarkdownImporter().parse_content(content, path.stem)
    if path.suffix == '.txt':
        return PlaintextImporter().parse_content(content, path.stem)
    raise TranscriptError(f"Unsupported transcript file type: {name}")


def load_session_file(file_path: Path) -> ImportedSession:
    with open(file_path, 'r', encoding='utf-8') as f:
        return parse_session_content(file_path.name, f.read())
