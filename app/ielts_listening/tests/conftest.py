import copy
import io
import os
from unittest import mock

import pytest
from botocore.exceptions import ClientError

# The application module reads its config class at import time
os.environ['FLASK_ENV'] = 'testing'

from app.ielts_listening.app import app as flask_app  # noqa: E402
from app.ielts_listening.models import StudyPlan, TaskProgress, User, db  # noqa: E402
from app.ielts_listening.services.audio_synthesizer import AudioSynthesizer  # noqa: E402
from app.ielts_listening.services.content_pipeline import ContentPipeline, PipelineSettings  # noqa: E402
from app.ielts_listening.services.task_store import TaskStore  # noqa: E402

BUCKET = 'test-bucket'
REGION = 'eu-west-2'

SCRIPT_TEXT = (
    "Receptionist: Good morning, Riverside Student Housing, how can I help? "
    "Student: Hi, I'd like to book a single room for the autumn term. "
    "Receptionist: Certainly. Could I take your surname, please? "
    "Student: It's Patel, P-A-T-E-L. "
    "Receptionist: Thank you. The single rooms cost ninety-five pounds a week, "
    "and that includes internet and cleaning once a fortnight. "
    "Student: Is there a kitchen I can use? "
    "Receptionist: Yes, each floor has a shared kitchen with two fridges."
)

SCRIPT_PAYLOAD = {
    'script': SCRIPT_TEXT,
    'scriptType': 'dialogue',
    'topicDomain': 'Accommodation',
    'contextLabel': 'Student Housing',
    'scenarioOverview': 'A student phones a housing office to book a room for the term.',
    'accent': 'Australian',
    'estimatedDurationSec': 95,
    'ieltsPart': 1,
}


def make_question(qid, correct='A', options=None, explanation='Stated directly in the call.'):
    return {
        'id': qid,
        'question': f'Question {qid}?',
        'options': options if options is not None else ['Ninety', 'Ninety-five', 'One hundred', 'Eighty-five'],
        'correctAnswer': correct,
        'explanation': explanation,
    }


QUESTIONS_PAYLOAD = {
    'questions': [
        make_question('q1', 'B'),
        make_question('q2', 'A'),
        make_question('q3', 'C'),
        make_question('q4', 'D'),
        make_question('q5', 'b) Ninety-five'),
    ]
}


class FakeGemini:
    """Stands in for GeminiClient; answers by which generator is calling."""

    def __init__(self, script=SCRIPT_PAYLOAD, questions=QUESTIONS_PAYLOAD):
        self.script_response = script
        self.questions_response = questions
        self.calls = []

    def generate_json(self, prompt, system_instruction=None, **kwargs):
        kind = 'script' if 'realistic script' in (system_instruction or '') else 'questions'
        self.calls.append({'kind': kind, 'prompt': prompt, 'system_instruction': system_instruction, **kwargs})
        response = self.script_response if kind == 'script' else self.questions_response
        if isinstance(response, Exception):
            raise response
        return copy.deepcopy(response)

    def calls_of(self, kind):
        return [call for call in self.calls if call['kind'] == kind]


class FakeS3:
    """In-memory S3 implementing the calls the synthesizer makes."""

    def __init__(self):
        self.objects = {}
        self.put_calls = []

    def put_object(self, **kwargs):
        self.put_calls.append(kwargs)
        self.objects[(kwargs['Bucket'], kwargs['Key'])] = kwargs
        return {'ETag': '"etag"'}

    def head_object(self, Bucket, Key):
        stored = self.objects.get((Bucket, Key))
        if stored is None:
            raise ClientError({'Error': {'Code': '404', 'Message': 'Not Found'}}, 'HeadObject')
        return {'ContentLength': len(stored['Body']), 'ContentType': stored['ContentType']}


def make_polly(audio=b'\xff\xfb\x90\x00' * 1024):
    polly = mock.Mock()
    polly.synthesize_speech.side_effect = lambda **kwargs: {'AudioStream': io.BytesIO(audio)}
    return polly


@pytest.fixture
def app():
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def fake_llm():
    return FakeGemini()


@pytest.fixture
def fake_s3():
    return FakeS3()


@pytest.fixture
def polly():
    return make_polly()


@pytest.fixture
def synthesizer(polly, fake_s3):
    return AudioSynthesizer(polly, fake_s3, bucket=BUCKET, region=REGION)


@pytest.fixture
def store(app):
    return TaskStore()


@pytest.fixture
def pipeline(app, store, fake_llm, synthesizer):
    return ContentPipeline(store, fake_llm, synthesizer, PipelineSettings())


@pytest.fixture
def user(app):
    account = User(id='user-1', email='learner@example.com')
    db.session.add(account)
    db.session.add(StudyPlan(user_id=account.id, target_band_score=6.5, skill_ratings={'listening': 5}))
    db.session.commit()
    return account


@pytest.fixture
def make_task(app, user):
    def _make(**overrides):
        fields = {
            'user_id': user.id,
            'week_number': 2,
            'day_number': 3,
            'task_title': 'Listening Practice Day 3',
            'skill': 'listening',
            'status': 'not-started',
        }
        fields.update(overrides)
        task = TaskProgress(**fields)
        db.session.add(task)
        db.session.commit()
        return task
    return _make
