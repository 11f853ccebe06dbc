"""
Deterministic offline providers.

Used for dry runs and development: no network, no cost, same output for the
same input. The content provider understands the two tasks the pipeline
asks for ("analyze" and "lessons") and answers "lessons" with the JSON
shape the GENERATE_CONTENT stage expects.
"""

import hashlib
import json
import logging

logger = logging.getLogger(__name__)


def _short_hash(*parts: str) -> str:
    h = hashlib.sha256()
    for part in parts:
        h.update(part.encode("utf-8"))
        h.update(b"\x00")
    return h.hexdigest()[:16]


def _paragraphs(text: str) -> list[str]:
    paras = [p.strip() for p in text.split('\n\n') if p.strip()]
    return paras or [text.strip()]


class LocalContentProvider:

    def __init__(self, name: str = "local-content"):
        self.name = name

    def generate(self, prompt: str, options: dict) -> str:
        task = options.get('task')
        source = options.get('transcript', prompt)
        if task == 'lessons':
            return json.dumps({'lessons': self._lessons(source, int(options.get('max_lessons', 1)))})
        # analyze: a short outline built from paragraph openers
        openers = [p.split('.')[0].strip() for p in _paragraphs(source)]
        return '\n'.join(f"- {line}" for line in openers if line)

    @staticmethod
    def _lessons(text: str, max_lessons: int) -> list[dict]:
        paras = _paragraphs(text)
        count = max(1, min(max_lessons, len(paras)))
        size = -(-len(paras) // count)   # ceil division
        lessons = []
        for i in range(count):
            body = '\n\n'.join(paras[i * size:(i + 1) * size])
            if not body:
                break
            title = body.split('.')[0][:80].strip() or f"Lesson {i + 1}"
            lessons.append({'title': title, 'body': body})
        return lessons


class LocalVoiceProvider:

    def __init__(self, name: str = "local-voice"):
        self.name = name

    def synthesize(self, text: str, voice_config: dict) -> str:
        voice = voice_config.get('voice', 'default')
        return f"audio://{self.name}/{voice}/{_short_hash(text, voice)}.mp3"


class LocalMediaProvider:

    def __init__(self, name: str = "local-media"):
        self.name = name

    def render(self, slide_spec: dict, audio_ref: str) -> str:
        spec = json.dumps(slide_spec, sort_keys=True)
        return f"video://{self.name}/{_short_hash(spec, audio_ref)}.mp4"
