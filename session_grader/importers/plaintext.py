import re
from pathlib import Path
from typing import Any, Dict, List

from ..schemas import ImportedSession, Transcript, normalize_speaker


class PlaintextImporter:
    def __init__(self):
        self.timestamp_pattern = re.compile(r'\[(\d{1,2}:\d{2}:\d{2}|\d{1,2}:\d{2})\]\s*([^:]+):\s*(.+)')
        self.speaker_pattern = re.compile(r'^([^:]{1,40}):\s*(.+)')

    def parse_file(self, file_path: Path) -> ImportedSession:
        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()

        return self.parse_content(content, file_path.stem)

    def parse_content(self, content: str, session_id: str) -> ImportedSession:
        transcript = self.parse_text(content)
        return ImportedSession(
            session_id=session_id,
            transcript=transcript,
            duration_seconds=self._estimate_duration(transcript),
            source='plaintext'
        )

    def parse_text(self, content: str) -> Transcript:
        return Transcript(utterances=self._extract_utterances(content))

    def _extract_utterances(self, content: str) -> List[Dict[str, Any]]:
        utterances = []

        for line in content.split('\n'):
            line = line.strip()
            if not line or line == '---':
                continue

            timestamp_match = self.timestamp_pattern.match(line)
            if timestamp_match:
                utterances.append({
                    'timestamp': timestamp_match.group(1),
                    'speaker': timestamp_match.group(2).strip(),
                    'text': timestamp_match.group(3).strip()
                })
                continue

            speaker_match = self.speaker_pattern.match(line)
            if speaker_match and normalize_speaker(speaker_match.group(1)) != 'unknown':
                utterances.append({
                    'timestamp': None,
                    'speaker': speaker_match.group(1).strip(),
                    'text': speaker_match.group(2).strip()
                })
            elif utterances and not line.startswith(('#', '-', '•', '*')):
                # Wrapped line continues the previous turn
                utterances[-1]['text'] += ' ' + line

        return utterances

    def _estimate_duration(self, transcript: Transcript):
        seconds = [u.seconds for u in transcript.utterances if u.seconds is not None]
        if len(seconds) < 2:
            return None
        return seconds[-1] - seconds[0]
