"""
The fixed course pipeline: ANALYZE -> GENERATE_CONTENT -> GENERATE_MEDIA -> ASSEMBLE.

Each stage declares the canonical inputs its cache key is computed from and
a ``run`` that produces a JSON-serialisable artifact. Stages never call a
provider client directly; they go through ``StageContext.call`` so the
executor can apply rate limiting on every provider call.

Cache key inputs per stage:
    ANALYZE           transcript_ref, audience, max_lessons, content provider
    GENERATE_CONTENT  transcript_ref, analysis digest, audience, max_lessons,
                      content provider
    GENERATE_MEDIA    lessons digest, voice settings, voice + media providers
    ASSEMBLE          digests of all earlier artifacts, course title
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from coursegen.core.constants import Capability, JobStage, STAGE_SEQUENCE
from coursegen.core.error_codes import MalformedResponseError
from coursegen.core.fingerprint import digest, stage_key
from coursegen.core.models_sqlite import CourseConfig
from coursegen.core.output_writer import build_manifest

logger = logging.getLogger(__name__)


@dataclass
class StageContext:
    job_id: str
    course: CourseConfig
    transcript: str
    transcript_ref: str
    outputs: dict = field(default_factory=dict)      # stage -> artifact
    # Set by the executor
    call: Callable[..., Any] | None = None
    report: Callable[[float, str], None] | None = None

    def progress(self, fraction: float, message: str):
        if self.report is not None:
            self.report(fraction, message)


class PromptBuilder:
    """Minimal default prompts. Swap in a richer builder for real providers."""

    def analyze(self, transcript: str, course: CourseConfig) -> str:
        return (
            f"Analyse this transcript for a course aimed at {course.target_audience}. "
            f"Identify at most {course.max_lessons} teachable topics in order.\n\n"
            f"{transcript}"
        )

    def lessons(self, transcript: str, analysis: str, course: CourseConfig) -> str:
        return (
            f"Write up to {course.max_lessons} lessons for {course.target_audience}. "
            'Reply with JSON: {"lessons": [{"title": ..., "body": ...}]}.\n\n'
            f"Outline:\n{analysis}\n\nTranscript:\n{transcript}"
        )


class Stage:
    name: str = ""
    capabilities: tuple = ()

    def inputs(self, ctx: StageContext) -> dict:
        raise NotImplementedError

    def run(self, ctx: StageContext) -> dict:
        raise NotImplementedError


class AnalyzeStage(Stage):
    name = JobStage.ANALYZE
    capabilities = (Capability.CONTENT,)

    def __init__(self, prompts: PromptBuilder):
        self.prompts = prompts

    def inputs(self, ctx):
        return {
            'transcript_ref': ctx.transcript_ref,
            'audience': ctx.course.target_audience,
            'max_lessons': ctx.course.max_lessons,
            'content_provider': ctx.course.providers[Capability.CONTENT],
        }

    def run(self, ctx):
        prompt = self.prompts.analyze(ctx.transcript, ctx.course)
        options = {'task': 'analyze', 'audience': ctx.course.target_audience,
                   'max_lessons': ctx.course.max_lessons, 'transcript': ctx.transcript}
        text = ctx.call(Capability.CONTENT, lambda client: client.generate(prompt, options), prompt)
        if not isinstance(text, str) or not text.strip():
            raise MalformedResponseError("Analysis came back empty")
        return {'analysis': text.strip()}


class GenerateContentStage(Stage):
    name = JobStage.GENERATE_CONTENT
    capabilities = (Capability.CONTENT,)

    def __init__(self, prompts: PromptBuilder):
        self.prompts = prompts

    def inputs(self, ctx):
        return {
            'transcript_ref': ctx.transcript_ref,
            'analysis': digest(ctx.outputs[JobStage.ANALYZE]),
            'audience': ctx.course.target_audience,
            'max_lessons': ctx.course.max_lessons,
            'content_provider': ctx.course.providers[Capability.CONTENT],
        }

    def run(self, ctx):
        analysis = ctx.outputs[JobStage.ANALYZE]['analysis']
        prompt = self.prompts.lessons(ctx.transcript, analysis, ctx.course)
        options = {'task': 'lessons', 'audience': ctx.course.target_audience,
                   'max_lessons': ctx.course.max_lessons, 'transcript': ctx.transcript}
        text = ctx.call(Capability.CONTENT, lambda client: client.generate(prompt, options), prompt)
        return {'lessons': parse_lessons(text, ctx.course.max_lessons)}


def parse_lessons(text: str, max_lessons: int) -> list[dict]:
    """Validate the content provider's lesson JSON and trim it to max_lessons."""
    try:
        data = json.loads(text)
    except (TypeError, ValueError):
        raise MalformedResponseError("Lesson response is not valid JSON")

    lessons = data.get('lessons') if isinstance(data, dict) else None
    if not isinstance(lessons, list) or not lessons:
        raise MalformedResponseError("Lesson response has no 'lessons' list")

    cleaned = []
    for i, lesson in enumerate(lessons[:max_lessons]):
        if not isinstance(lesson, dict):
            raise MalformedResponseError(f"Lesson {i} is not an object")
        title = str(lesson.get('title') or '').strip()
        body = str(lesson.get('body') or '').strip()
        if not title or not body:
            raise MalformedResponseError(f"Lesson {i} is missing a title or body")
        cleaned.append({'title': title, 'body': body})
    return cleaned


class GenerateMediaStage(Stage):
    name = JobStage.GENERATE_MEDIA
    capabilities = (Capability.VOICE, Capability.MEDIA)

    def inputs(self, ctx):
        return {
            'lessons': digest(ctx.outputs[JobStage.GENERATE_CONTENT]),
            'voice': ctx.course.voice,
            'voice_provider': ctx.course.providers[Capability.VOICE],
            'media_provider': ctx.course.providers[Capability.MEDIA],
        }

    def run(self, ctx):
        lessons = ctx.outputs[JobStage.GENERATE_CONTENT]['lessons']
        media = []
        for i, lesson in enumerate(lessons):
            ctx.progress(i / len(lessons), f"Narrating lesson {i + 1}/{len(lessons)}")
            body = lesson['body']
            audio_ref = ctx.call(Capability.VOICE,
                                 lambda client: client.synthesize(body, ctx.course.voice), body)
            if not isinstance(audio_ref, str) or not audio_ref.strip():
                raise MalformedResponseError(f"No audio returned for lesson {i}")

            slide = {'lesson_index': i, 'title': lesson['title'], 'body': body}
            ctx.progress((i + 0.5) / len(lessons), f"Rendering lesson {i + 1}/{len(lessons)}")
            video_ref = ctx.call(Capability.MEDIA,
                                 lambda client: client.render(slide, audio_ref), lesson['title'])
            if not isinstance(video_ref, str) or not video_ref.strip():
                raise MalformedResponseError(f"No video returned for lesson {i}")
            media.append({'lesson': i, 'audio_ref': audio_ref, 'video_ref': video_ref})
        return {'media': media}


class AssembleStage(Stage):
    """No provider call; hands the artifacts to the course assembler."""
    name = JobStage.ASSEMBLE

    def __init__(self, assembler):
        self.assembler = assembler

    def inputs(self, ctx):
        return {
            'artifacts': {stage: digest(ctx.outputs[stage])
                          for stage in STAGE_SEQUENCE if stage in ctx.outputs},
            'title': ctx.course.title,
        }

    def run(self, ctx):
        manifest = build_manifest(
            title=ctx.course.title,
            audience=ctx.course.target_audience,
            lessons=ctx.outputs[JobStage.GENERATE_CONTENT]['lessons'],
            media=ctx.outputs[JobStage.GENERATE_MEDIA]['media'],
            analysis=ctx.outputs[JobStage.ANALYZE]['analysis'],
        )
        return self.assembler.assemble(manifest, stage_key(self.name, self.inputs(ctx)))


def build_pipeline(assembler, prompts: PromptBuilder | None = None) -> list[Stage]:
    prompts = prompts or PromptBuilder()
    stages = [
        AnalyzeStage(prompts),
        GenerateContentStage(prompts),
        GenerateMediaStage(),
        AssembleStage(assembler),
    ]
    assert tuple(s.name for s in stages) == STAGE_SEQUENCE
    return stages
