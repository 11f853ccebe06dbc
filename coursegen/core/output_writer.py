"""
Output writer: hands finished artifacts to the course assembly step.

The default assembler writes a course manifest the portal renderer consumes:
<OutputRoot>/<SanitizedTitle>-<key prefix>/course.json
"""

import json
import logging
from pathlib import Path

from coursegen.core.security_utils import safe_output_path

logger = logging.getLogger(__name__)


def build_manifest(title: str, audience: str, lessons: list[dict], media: list[dict],
                   analysis: str) -> dict:
    media_by_lesson = {m['lesson']: m for m in media}
    return {
        'title': title,
        'audience': audience,
        'summary': analysis,
        'lessons': [
            {
                'index': i,
                'title': lesson['title'],
                'body': lesson['body'],
                'audio_ref': media_by_lesson.get(i, {}).get('audio_ref'),
                'video_ref': media_by_lesson.get(i, {}).get('video_ref'),
            }
            for i, lesson in enumerate(lessons)
        ],
    }


class ManifestAssembler:
    """Default CourseAssembler: one JSON manifest per course."""

    def __init__(self, output_root: Path):
        self.output_root = Path(output_root)

    def assemble(self, manifest: dict, key: str) -> dict:
        folder = safe_output_path(self.output_root, manifest.get('title', ''), key[:12])
        folder.mkdir(parents=True, exist_ok=True)
        output_file = folder / "course.json"
        output_file.write_text(json.dumps(manifest, indent=2), encoding='utf-8')
        logger.info("Wrote course manifest: %s", output_file)
        return {'manifest_path': str(output_file), 'lesson_count': len(manifest['lessons'])}
