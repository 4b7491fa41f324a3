import os
import tempfile

os.environ["THERASTORY_DATA_DIR"] = tempfile.mkdtemp(prefix="therastory_test_")
os.environ["DEFAULT_LLM_PROVIDER"] = "mock"

from fastapi.testclient import TestClient

from conftest import brief_payload
from main import app


client = TestClient(app)


def test_health():
    r = client.get('/api/health')
    assert r.status_code == 200
    assert r.json()['default_rule_set'] == 'v1'
    assert r.json()['provider'] == 'mock'


def test_rulesets_listed():
    r = client.get('/api/rulesets')
    assert r.status_code == 200
    assert any(v['version'] == 'v1' and v['is_default'] for v in r.json())
    assert client.get('/api/rulesets/v1').json()['age_rules']['3_6']['max_words'] == 450


def test_invalid_brief_is_422():
    r = client.post('/api/briefs', json=brief_payload(age_group='teen'))
    assert r.status_code == 422
    assert r.json()['error'] == 'BRIEF_INVALID'


def test_unknown_draft_is_404():
    r = client.get('/api/drafts/draft_missing')
    assert r.status_code == 404
    assert r.json()['error'] == 'NOT_FOUND'


def test_brief_to_approved_story():
    brief_id = client.post('/api/briefs', json=brief_payload()).json()['id']

    contract = client.get(f'/api/briefs/{brief_id}/contract').json()
    assert contract['status'] == 'valid'
    assert contract['length_budget'] == {'min_scenes': 5, 'max_scenes': 8, 'max_words': 450}

    bad = client.post(f'/api/briefs/{brief_id}/override', json={'coping_tool_id': 'magic_wand'})
    assert bad.status_code == 422
    assert bad.json()['error'] == 'OVERRIDE_REJECTED'

    ok = client.post(f'/api/briefs/{brief_id}/override', json={'coping_tool_id': 'counting', 'reason': 'likes numbers'})
    assert ok.status_code == 200
    assert ok.json()['allowed_coping_tools'] == ['counting']

    r = client.post(f'/api/briefs/{brief_id}/generate-draft', json={'requested_by': 'therapist_1', 'language': 'en'})
    assert r.status_code == 200
    draft = r.json()
    assert draft['status'] == 'draft_generated'
    assert 'counting' in draft['pages'][-1]['text']

    locked = client.post(f'/api/briefs/{brief_id}/override', json={'coping_tool_id': 'safe_object'})
    assert locked.status_code == 409
    assert locked.json()['error'] == 'BRIEF_LOCKED'

    session = client.post('/api/review-sessions', json={'draft_id': draft['id'], 'specialist_id': 'spec_1'}).json()
    out = client.post(f"/api/review-sessions/{session['id']}/messages", json={'content': 'Warmer ending please', 'specialist_id': 'spec_1'}).json()
    proposal_id = out['proposal']['id']

    forbidden = client.post(f"/api/review-sessions/{session['id']}/proposals/{proposal_id}/apply", json={'specialist_id': 'spec_2'})
    assert forbidden.status_code == 403

    applied = client.post(f"/api/review-sessions/{session['id']}/proposals/{proposal_id}/apply", json={'specialist_id': 'spec_1'})
    assert applied.status_code == 200
    assert applied.json()['draft']['revision_count'] == 1

    approved = client.post(f"/api/drafts/{draft['id']}/approve", json={'specialist_id': 'spec_1', 'session_id': session['id']})
    assert approved.status_code == 200
    assert approved.json()['status'] == 'approved'

    late = client.put(f"/api/drafts/{draft['id']}", json={'title': 'Changed'})
    assert late.status_code == 409
    assert late.json()['error'] == 'DRAFT_IMMUTABLE'

    events = [e['event'] for e in client.get(f"/api/drafts/{draft['id']}/events").json()]
    assert events[-1] == 'approve'
    assert 'revision_applied' in events
