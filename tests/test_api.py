from datetime import timedelta

import pytest

from conftest import NOW, auth_header


PATHWAY = {
    'name': 'Single implant',
    'reason': 'Missing tooth',
    'steps': [
        {'stepCode': 'IMPLANT', 'pool': 'work', 'durationMinutes': 30, 'defaultDaysOffset': 14},
        {'stepCode': 'ABUTMENT', 'pool': 'work', 'durationMinutes': 30, 'defaultDaysOffset': 14},
        {'stepCode': 'CROWN', 'pool': 'work', 'durationMinutes': 30, 'defaultDaysOffset': 14},
    ],
}


def _slot_time(days):
    return (NOW + timedelta(days=days)).replace(hour=11).isoformat()


def _create_slot(client, provider, days):
    resp = client.post(
        '/api/time-slots',
        json={'startTime': _slot_time(days), 'durationMinutes': 30, 'providerId': provider.id},
        headers=auth_header(provider),
    )
    assert resp.status_code == 200, resp.text
    return resp.json()['data']


def test_health_and_metrics(client):
    resp = client.get('/health')
    assert resp.status_code == 200
    assert resp.json()['status'] == 'ok'

    metrics = client.get('/metrics')
    assert metrics.status_code == 200
    assert 'carepath_bookings' in metrics.text


def test_missing_token_is_refused(client):
    resp = client.get('/api/recommendations/intake')
    assert resp.status_code in (401, 403)
    body = resp.json()
    assert body['success'] is False


def test_invalid_token_is_refused(client):
    resp = client.get('/api/recommendations/intake', headers={'Authorization': 'Bearer nope'})
    assert resp.status_code == 401
    assert resp.json() == {
        'success': False,
        'error': {'code': 401, 'message': 'Invalid or expired token'},
    }


def test_clinician_cannot_manage_pathways(client, provider):
    resp = client.post('/api/care-pathways', json=PATHWAY, headers=auth_header(provider))
    assert resp.status_code == 403
    assert resp.json()['error']['code'] == 403


def test_validation_errors_use_the_envelope(client, provider):
    resp = client.post('/api/episodes', json={'reason': 'no patient'}, headers=auth_header(provider))
    assert resp.status_code == 422
    body = resp.json()
    assert body['success'] is False
    assert body['error']['code'] == 'VALIDATION_ERROR'
    assert body['error']['details']


def test_scheduling_errors_use_the_envelope(client, provider):
    resp = client.get('/api/episodes/9999/next-step', headers=auth_header(provider))
    assert resp.status_code == 404
    assert resp.json()['error']['code'] == 'EPISODE_NOT_FOUND'


def test_pathway_to_booking_flow(client, factory, admin, provider):
    patient = factory.patient()
    created = client.post('/api/care-pathways', json=PATHWAY, headers=auth_header(admin))
    assert created.status_code == 200, created.text
    pathway = created.json()['data']
    assert [step['step_code'] for step in pathway['steps']] == ['IMPLANT', 'ABUTMENT', 'CROWN']

    headers = auth_header(provider)
    resp = client.post(
        '/api/episodes',
        json={'patientId': patient.id, 'providerId': provider.id, 'carePathwayId': pathway['id']},
        headers=headers,
    )
    assert resp.status_code == 200, resp.text
    episode_id = resp.json()['data']['id']

    generated = client.post(f'/api/episodes/{episode_id}/steps/generate', json={}, headers=headers)
    assert generated.status_code == 200, generated.text
    assert len(generated.json()['data']['steps']) == 3

    next_step = client.get(f'/api/episodes/{episode_id}/next-step', headers=headers).json()['data']
    assert next_step['status'] == 'ready'
    assert next_step['stepCode'] == 'IMPLANT'
    assert next_step['seq'] == 0

    projected = client.post(f'/api/episodes/{episode_id}/intents/project', headers=headers)
    assert projected.status_code == 200, projected.text
    intents = projected.json()['data']['intents']
    assert [intent['stepCode'] for intent in intents] == ['IMPLANT', 'ABUTMENT', 'CROWN']
    assert all(intent['state'] == 'open' for intent in intents)

    first_slot = _create_slot(client, provider, days=17)
    second_slot = _create_slot(client, provider, days=31)

    converted = client.post(
        f"/api/slot-intents/{intents[0]['id']}/convert",
        json={'timeSlotId': first_slot['id']},
        headers=headers,
    )
    assert converted.status_code == 200, converted.text
    data = converted.json()['data']
    assert data['intentId'] == intents[0]['id']
    assert data['appointment']['timeSlotId'] == first_slot['id']
    assert data['overrideAuditId'] is None

    refused = client.post(
        f"/api/slot-intents/{intents[1]['id']}/convert",
        json={'timeSlotId': second_slot['id']},
        headers=headers,
    )
    assert refused.status_code == 409
    assert refused.json()['error']['code'] == 'ONE_HARD_NEXT_VIOLATION'

    allowed = client.post(
        f"/api/slot-intents/{intents[1]['id']}/convert",
        json={'timeSlotId': second_slot['id'], 'requiresPrecommit': True},
        headers=headers,
    )
    assert allowed.status_code == 200, allowed.text
    assert allowed.json()['data']['overrideAuditId'] is not None
    assert allowed.json()['data']['appointment']['requiresPrecommit'] is True

    integrity = client.get(f'/api/episodes/{episode_id}/scheduling-integrity', headers=headers)
    assert integrity.json()['data']['ok'] is True

    forecast = client.post(
        '/api/episodes/forecast/batch', json={'episodeIds': [episode_id]}, headers=headers
    )
    assert forecast.status_code == 200, forecast.text
    payload = forecast.json()['data']
    assert payload['meta']['limit'] == 100
    assert str(episode_id) in payload['forecasts']


def test_pending_offer_rejected_by_token(client, factory, admin, provider):
    patient = factory.patient()
    primary = factory.slot(provider, days=3)
    alternative = factory.slot(provider, days=4)

    resp = client.post(
        '/api/appointments/pending',
        json={
            'patientId': patient.id,
            'timeSlotId': primary.id,
            'alternativeTimeSlotIds': [alternative.id],
        },
        headers=auth_header(admin),
    )
    assert resp.status_code == 200, resp.text
    offer = resp.json()['data']
    assert offer['approvalStatus'] == 'pending'

    bad = client.post(f"/api/appointments/{offer['id']}/reject", json={'token': 'wrong'})
    assert bad.status_code == 403
    assert bad.json()['error']['code'] == 'INVALID_APPROVAL_TOKEN'

    rejected = client.post(
        f"/api/appointments/{offer['id']}/reject", json={'token': offer['approvalToken']}
    )
    assert rejected.status_code == 200, rejected.text
    data = rejected.json()['data']
    assert data['hasMoreAlternatives'] is True
    assert data['appointment']['timeSlotId'] == alternative.id

    approved = client.post(
        f"/api/appointments/{offer['id']}/approve", json={'token': offer['approvalToken']}
    )
    assert approved.status_code == 200, approved.text
    assert approved.json()['data']['approvalStatus'] == 'approved'


@pytest.mark.parametrize('requested, expected', [(99, 28), (1, 7)])
def test_workload_horizon_is_clamped(client, provider, requested, expected):
    resp = client.get(f'/api/doctors/workload?horizonDays={requested}', headers=auth_header(provider))
    assert resp.status_code == 200
    data = resp.json()['data']
    assert data['horizonDays'] == expected
    assert [entry['userId'] for entry in data['doctors']] == [provider.id]


def test_tripwires_require_admin(client, admin, provider):
    assert client.get('/api/scheduling/tripwires', headers=auth_header(provider)).status_code == 403
    resp = client.get('/api/scheduling/tripwires', headers=auth_header(admin))
    assert resp.status_code == 200
    assert resp.json()['data']['oneHardNextViolations'] == []


def test_step_catalog_refreshes_after_committed_writes(client, admin, provider):
    headers = auth_header(provider)
    assert client.get('/api/step-catalog', headers=headers).json()['data'] == {'labels': {}, 'unmapped': []}

    created = client.post('/api/care-pathways', json=PATHWAY, headers=auth_header(admin))
    assert created.status_code == 200, created.text
    catalog = client.get('/api/step-catalog', headers=headers).json()['data']
    assert catalog['unmapped'] == ['ABUTMENT', 'CROWN', 'IMPLANT']

    labelled = client.put('/api/step-catalog/CROWN', json={'label': 'Final crown'}, headers=auth_header(admin))
    assert labelled.status_code == 200, labelled.text
    catalog = client.get('/api/step-catalog', headers=headers).json()['data']
    assert catalog == {'labels': {'CROWN': 'Final crown'}, 'unmapped': ['ABUTMENT', 'IMPLANT']}
