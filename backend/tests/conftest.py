"""
Shared pytest fixtures for Comic Creator tests.
"""
import os
import sys
import shutil
import tempfile
import pytest
from io import BytesIO
from PIL import Image

# Add backend directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Isolated database, logs and credentials before any backend module is imported
_SESSION_DIR = tempfile.mkdtemp(prefix='comic-tests-')
os.environ['DATABASE_PATH'] = os.path.join(_SESSION_DIR, 'session.db')
os.environ['LOG_DIR'] = os.path.join(_SESSION_DIR, 'logs')
os.environ['USE_CELERY'] = 'false'
os.environ['GEMINI_API_KEY'] = 'test-primary-key-0001'
os.environ['GEMINI_API_KEYS'] = ''
os.environ['ADMIN_PASSWORD'] = 'test_password_123'


def pytest_sessionfinish(session, exitstatus):
    shutil.rmtree(_SESSION_DIR, ignore_errors=True)


@pytest.fixture(scope='session')
def app():
    """Create Flask application for testing."""
    os.environ['TESTING'] = 'true'

    from app import app as flask_app
    flask_app.config['TESTING'] = True

    yield flask_app


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def test_db(monkeypatch, tmp_path):
    """Create isolated test database."""
    db_path = str(tmp_path / 'test.db')
    monkeypatch.setenv('DATABASE_PATH', db_path)

    from database import init_db
    init_db()

    yield db_path


@pytest.fixture
def key_pool_env(monkeypatch):
    """Three-key pool built from the environment, reset around the test."""
    from key_pool import reset_key_pool
    monkeypatch.setenv('GEMINI_API_KEY', 'key-aaaaaaaa-0')
    monkeypatch.setenv('GEMINI_API_KEYS', 'key-bbbbbbbb-1,key-cccccccc-2')
    reset_key_pool()
    yield ['key-aaaaaaaa-0', 'key-bbbbbbbb-1', 'key-cccccccc-2']
    reset_key_pool()


@pytest.fixture
def png_bytes():
    """Small PNG image."""
    img = Image.new('RGB', (16, 16), color='blue')
    out = BytesIO()
    img.save(out, format='PNG')
    return out.getvalue()


@pytest.fixture
def png_data_url(png_bytes):
    from image_utils import to_data_url
    return to_data_url(png_bytes, 'image/png')


@pytest.fixture
def make_panel():
    """Factory for script panels."""
    from models import Panel, DialogueLine

    def _make(page, narration='', dialogue=None, **kwargs):
        return Panel(
            page=page,
            description=f'Panel {page} description',
            narration=narration,
            dialogue=[DialogueLine(character=c, line=l) for c, l in (dialogue or [])],
            **kwargs
        )
    return _make


@pytest.fixture
def sample_project(test_db, png_data_url, make_panel):
    """Stored project with two chapters, one character and three finished panels."""
    from models import Project, Chapter, Character, Scenery
    from database import save_project

    project = Project(
        title='The Lighthouse',
        story_text='A keeper finds a message in a bottle. She rows out to sea.',
        chapters=[
            Chapter(title='The Bottle', text='A keeper finds a message in a bottle.'),
            Chapter(title='The Crossing', text='She rows out to sea.'),
        ],
        characters=[Character(name='Mara', description='Lighthouse keeper in a yellow coat', image=png_data_url)],
        scenery=[Scenery(description='A rocky island with a white lighthouse')],
        story_pages=[
            make_panel(1, narration='Night fell.', image=png_data_url, lettering=[]),
            make_panel(2, dialogue=[('Mara', 'What is this?')], image=png_data_url, lettering=[]),
            make_panel(3, image=png_data_url, lettering=[]),
        ],
    )
    save_project(project)
    return project


@pytest.fixture
def admin_token(client):
    """Get admin authentication token."""
    response = client.post('/api/admin/login', json={
        'password': 'test_password_123'
    }, headers={'X-Forwarded-For': '10.0.0.1'})
    if response.status_code == 200:
        return response.get_json().get('token')
    return None


class FakeRedis:
    """Just enough of redis.Redis for cancel flags"""

    def __init__(self):
        self.store = {}
        self.ttls = {}

    def set(self, key, value, ex=None):
        self.store[key] = value
        self.ttls[key] = ex

    def exists(self, key):
        return 1 if key in self.store else 0

    def delete(self, key):
        self.ttls.pop(key, None)
        return 1 if self.store.pop(key, None) is not None else 0


@pytest.fixture
def fake_redis():
    return FakeRedis()
