import json
import csv
from collections import Counter
from pathlib import Path
from typing import List
from datetime import date, datetime

from .schemas import SessionGradingState


class ReportGenerator:
    def generate_json_output(self, sessions: List[SessionGradingState], output_path: Path):
        output_data = [session.model_dump(mode='json', exclude={'transcript'}) for session in sessions]

        with open(output_path, 'w') as f:
            json.dump(output_data, f, indent=2, default=self._json_serializer)

    def generate_csv_output(self, sessions: List[SessionGradingState], output_path: Path):
        if not sessions:
            return

        with open(output_path, 'w', newline='') as f:
            writer = csv.writer(f)

            writer.writerow([
                'session_id', 'grading_status', 'overall_score', 'estimated_score',
                'rapport', 'discovery', 'objection_handling', 'closing',
                'sale_closed', 'virtual_earnings', 'objection_count', 'close_attempts',
                'conversation_balance', 'key_moments', 'lines_rated', 'line_ratings_status'
            ])

            for session in sessions:
                metrics = session.instant_metrics
                deep = session.deep_grade
                writer.writerow([
                    session.session_id,
                    session.status.value,
                    session.overall_score if session.overall_score is not None else '',
                    metrics.estimated_score if metrics else '',
                    deep.scores.rapport if deep else '',
                    deep.scores.discovery if deep else '',
                    deep.scores.objection_handling if deep else '',
                    deep.scores.closing if deep else '',
                    deep.sale_closed if deep else '',
                    deep.virtual_earnings if deep else '',
                    metrics.objection_count if metrics else '',
                    metrics.close_attempts if metrics else '',
                    metrics.conversation_balance if metrics else '',
                    len(session.key_moments),
                    len(session.line_ratings),
                    session.line_ratings_status.value if session.line_ratings_status else ''
                ])

    def generate_coaching_report(self, session: SessionGradingState, output_path: Path):
        """Markdown coaching report for one session"""
        metrics = session.instant_metrics
        deep = session.deep_grade

        content = f"""# Coaching Report - {session.session_id}

**Status**: {session.status.value}
**Overall Score**: {session.overall_score if session.overall_score is not None else 'pending'}

"""
        if deep:
            outcome = f"Closed (${deep.virtual_earnings:,.2f})" if deep.sale_closed else f"Not closed - {deep.failure_reason}"
            content += f"""## Deep Grade
- **Outcome**: {outcome}
- **Rapport**: {deep.scores.rapport}
- **Discovery**: {deep.scores.discovery}
- **Objection Handling**: {deep.scores.objection_handling}
- **Closing**: {deep.scores.closing}
"""
            if deep.grading_note:
                content += f"\n> {deep.grading_note}\n"
            if deep.session_highlight:
                content += f"\n**Highlight**: {deep.session_highlight}\n"
            content += "\n"

        if metrics:
            scores = metrics.estimated_scores
            content += f"""## Instant Metrics
| Rapport | Discovery | Objections | Closing | Safety | Estimated |
|---------|-----------|------------|---------|--------|-----------|
| {scores.rapport} | {scores.discovery} | {scores.objection_handling} | {scores.closing} | {scores.safety} | **{metrics.estimated_score}** |

- Talk balance: {metrics.conversation_balance}% rep
- Questions asked: {metrics.question_count}
- Objections: {metrics.objection_count}, close attempts: {metrics.close_attempts}, safety mentions: {metrics.safety_mentions}

"""

        strengths = (deep.top_strengths if deep else []) or (session.moment_feedback.strengths if session.moment_feedback else [])
        improvements = (deep.top_improvements if deep else []) or (session.moment_feedback.improvements if session.moment_feedback else [])
        if strengths or improvements:
            content += "## Strengths\n"
            content += "".join(f"- {s}\n" for s in strengths) or "- None identified\n"
            content += "\n## Improvements\n"
            content += "".join(f"- {s}\n" for s in improvements) or "- None identified\n"
            content += "\n"

        if session.key_moments:
            content += "## Key Moments\n\n"
            for moment in session.key_moments:
                label = moment.type.replace('_', ' ').title()
                if moment.subtype:
                    label += f" ({moment.subtype})"
                content += f"### {moment.id}: {label} - importance {moment.importance}, {moment.outcome}\n\n"
                content += "```\n" + moment.transcript + "\n```\n"
                if moment.analysis:
                    content += f"- **What happened**: {moment.analysis.what_happened}\n"
                    if moment.analysis.what_worked:
                        content += f"- **What worked**: {moment.analysis.what_worked}\n"
                    content += f"- **What to improve**: {moment.analysis.what_to_improve}\n"
                    if moment.analysis.alternative_response:
                        content += f"- **Try instead**: \"{moment.analysis.alternative_response}\"\n"
                content += "\n"

        if session.line_ratings:
            distribution = Counter(r.rating for r in session.line_ratings)
            content += "## Line Ratings\n\n| Rating | Lines |\n|--------|-------|\n"
            for rating, count in distribution.most_common():
                content += f"| {rating} | {count} |\n"
            content += "\n"

            weak = [r for r in session.line_ratings if r.rating in ('poor', 'missed_opportunity') and r.alternatives]
            for rating in weak:
                content += f"- \"{rating.text}\" ({rating.rating}) -> \"{rating.alternatives[0]}\"\n"

        with open(output_path, 'w') as f:
            f.write(content)

    def _json_serializer(self, obj):
        if isinstance(obj, (date, datetime)):
            return obj.isoformat()
        raise TypeError(f"Object of type {type(obj)} is not JSON serializable")
