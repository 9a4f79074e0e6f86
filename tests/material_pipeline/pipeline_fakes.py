import json
import threading

from services.material_pipeline.prompts import ANALYSIS_SYSTEM_PROMPT
from services.material_pipeline.settings import PipelineSettings

ANALYSIS_JSON = json.dumps(
    {
        "category": "Aviation",
        "topics": ["Lift", "Drag", "Weight"],
        "summary": "Forces acting on an aircraft in flight.",
        "key_points": ["Lift opposes weight", "Thrust opposes drag"],
        "difficulty_level": "Beginner",
    }
)

QUESTIONS_JSON = json.dumps(
    [
        {
            "question": "Which force opposes weight?",
            "options": ["A) Lift", "B) Drag", "C) Thrust", "D) Friction"],
            "correctAnswer": "A",
            "explanation": "Lift acts upward against weight.",
            "tags": ["forces"],
        },
        {
            "question": "Which force opposes thrust?",
            "options": ["Lift", "Drag", "Weight", "Torque"],
            "correctAnswer": 1,
            "explanation": "Drag resists forward motion.",
            "tags": ["forces"],
        },
        {
            "question": "Broken question with three options",
            "options": ["a", "b", "c"],
            "correctAnswer": "A",
            "explanation": "Should be dropped.",
        },
    ]
)


class FakeGateway:
    def __init__(self, analysis_response=ANALYSIS_JSON, question_response=QUESTIONS_JSON):
        self.analysis_response = analysis_response
        self.question_response = question_response
        self.analysis_calls = []
        self.question_calls = []
        self.embed_calls = []
        self._lock = threading.Lock()

    def generate(self, prompt, system_prompt=None):
        with self._lock:
            if system_prompt == ANALYSIS_SYSTEM_PROMPT:
                self.analysis_calls.append(prompt)
                return self.analysis_response
            self.question_calls.append(prompt)
            return self.question_response

    def embed(self, text):
        with self._lock:
            self.embed_calls.append(text)
        return [float(len(text)), 1.0, 0.0]

    def extract_image_text(self, image_bytes, mime_type="image/jpeg"):
        return "text read from an image"


class FakeExtractor:
    def __init__(self, text, failures=None):
        self.text = text
        self.failures = list(failures or [])
        self.calls = 0

    def extract_text(self, blob_ref, kind):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.text


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def make_settings(**overrides):
    values = dict(
        chunk_size=4000,
        max_concurrent_chunks=3,
        batch_delay_seconds=1.0,
        provider_concurrency=3,
        chunk_max_attempts=3,
        chunk_retry_delay_seconds=1.0,
        job_max_attempts=3,
        job_retry_delay_seconds=0.0,
        stage_timeout_seconds=10.0,
        question_count=10,
        poll_interval_seconds=0.01,
    )
    values.update(overrides)
    return PipelineSettings(**values)
