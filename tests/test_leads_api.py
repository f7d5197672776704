"""
Tests for the leads CRM endpoints and planner settings.
"""
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def _create(client, headers, **fields):
    body = {'companyName': 'Piekarnia Kłos'}
    body.update(fields)
    resp = client.post('/api/leads', headers=headers, json=body)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()['lead']


class TestLeadsCrud:
    """Tests for creating, reading, updating and deleting leads."""

    def test_create_defaults(self, client, make_user):
        _, headers = make_user()
        lead = _create(client, headers, keyPeople=['Jan Kowalski'], lat=52.1, lng=21.0)
        assert lead['status'] == 'new'
        assert lead['priority'] == 'medium'
        assert lead['keyPeople'] == ['Jan Kowalski']
        assert lead['technologies'] == []
        assert lead['lat'] == 52.1
        assert lead['scheduledDate'] is None

    def test_create_requires_company_name(self, client, make_user):
        _, headers = make_user()
        assert client.post('/api/leads', headers=headers, json={'companyName': '  '}).status_code == 400
        assert client.post('/api/leads', headers=headers, json={'phone': '1'}).status_code == 400

    def test_create_rejects_bad_coordinates(self, client, make_user):
        _, headers = make_user()
        resp = client.post('/api/leads', headers=headers, json={'companyName': 'X', 'lat': 123})
        assert resp.status_code == 400

    def test_list_filters(self, client, make_user):
        _, headers = make_user()
        _create(client, headers, companyName='Chłodnia Mróz', status='contacted')
        _create(client, headers, companyName='Tartak Sosna', priority='high')
        leads = client.get('/api/leads', headers=headers).get_json()['leads']
        assert len(leads) == 2
        assert 'ownerEmail' not in leads[0]

        def names(query):
            return [l['companyName'] for l in client.get(f'/api/leads?{query}', headers=headers).get_json()['leads']]

        assert names('status=contacted') == ['Chłodnia Mróz']
        assert names('priority=high') == ['Tartak Sosna']
        assert names('search=tartak') == ['Tartak Sosna']

    def test_owner_scoping(self, client, make_user):
        _, alice = make_user('alice@example.com')
        _, bob = make_user('bob@example.com')
        lead = _create(client, alice)
        assert client.get(f"/api/leads/{lead['id']}", headers=bob).status_code == 404
        assert client.patch(f"/api/leads/{lead['id']}", headers=bob, json={'status': 'won'}).status_code == 404
        assert client.delete(f"/api/leads/{lead['id']}", headers=bob).status_code == 404
        assert client.get('/api/leads', headers=bob).get_json()['leads'] == []

    def test_admin_sees_all_leads(self, client, make_user):
        _, alice = make_user('alice@example.com')
        _, admin = make_user('boss@example.com', role='admin')
        lead = _create(client, alice)
        leads = client.get('/api/leads', headers=admin).get_json()['leads']
        assert leads[0]['ownerEmail'] == 'alice@example.com'
        detail = client.get(f"/api/leads/{lead['id']}", headers=admin).get_json()['lead']
        assert detail['user'] == {'name': 'Jan Kowalski', 'email': 'alice@example.com'}

    def test_patch(self, client, make_user):
        _, headers = make_user()
        lead = _create(client, headers, notes='stare')
        resp = client.patch(f"/api/leads/{lead['id']}", headers=headers, json={
            'status': 'meeting', 'priority': '', 'notes': None, 'scheduledDate': '2025-02-03', 'lat': 50.0,
        })
        updated = resp.get_json()['lead']
        assert updated['status'] == 'meeting'
        assert updated['priority'] == 'medium'
        assert updated['notes'] is None
        assert updated['scheduledDate'] == '2025-02-03'
        assert updated['lat'] == 50.0

    def test_delete(self, client, make_user):
        _, headers = make_user()
        lead = _create(client, headers)
        assert client.delete(f"/api/leads/{lead['id']}", headers=headers).get_json() == {'success': True}
        assert client.get(f"/api/leads/{lead['id']}", headers=headers).status_code == 404

    def test_deleted_account_gets_404(self, client, app, make_user):
        user_id, headers = make_user()
        conn = app.get_crm_db()
        conn.execute('DELETE FROM users WHERE id = ?', (user_id,))
        conn.commit()
        conn.close()
        resp = client.get('/api/leads', headers=headers)
        assert resp.status_code == 404
        assert resp.get_json()['error'] == 'User not found'


class TestLeadStatsAndExport:

    def test_stats(self, client, make_user):
        _, headers = make_user()
        lead = _create(client, headers)
        _create(client, headers, companyName='Drugi')
        client.patch(f"/api/leads/{lead['id']}", headers=headers, json={'scheduledDate': '2025-02-03'})
        assert client.get('/api/leads/stats', headers=headers).get_json() == {'total': 2, 'unscheduled': 1}

    def test_export_csv(self, client, app, make_user):
        _, headers = make_user()
        _create(client, headers, companyName='Firma "Sosna"', keyPeople=['Jan', 'Anna'])
        resp = client.get('/api/leads/export', headers=headers)
        assert resp.status_code == 200
        assert resp.mimetype == 'text/csv'
        assert 'attachment; filename="leads_' in resp.headers['Content-Disposition']
        lines = resp.get_data(as_text=True).split('\n')
        assert lines[0] == ','.join(app.LEAD_EXPORT_HEADERS)
        assert '"' not in lines[0]
        assert lines[1].startswith('"Firma ""Sosna""","","",')
        assert '"Jan; Anna"' in lines[1]


class TestPlannerSettings:
    """Tests for the per-day route planner settings."""

    def test_defaults(self, client, make_user):
        _, headers = make_user()
        resp = client.get('/api/planner/settings?date=2025-02-03', headers=headers)
        assert resp.get_json() == {'start': 'Warszawa', 'end': 'Warszawa', 'order': []}

    def test_requires_date(self, client, make_user):
        _, headers = make_user()
        assert client.get('/api/planner/settings', headers=headers).status_code == 400
        assert client.post('/api/planner/settings', headers=headers, json={'start': 'X'}).status_code == 400

    def test_save_and_overwrite(self, client, make_user):
        _, headers = make_user()
        client.post('/api/planner/settings', headers=headers,
                    json={'date': '2025-02-03', 'start': 'Łódź', 'order': ['a', 'b']})
        client.post('/api/planner/settings', headers=headers,
                    json={'date': '2025-02-03', 'start': 'Radom', 'end': 'Kielce', 'order': ['b']})
        body = client.get('/api/planner/settings?date=2025-02-03', headers=headers).get_json()
        assert body['start'] == 'Radom'
        assert body['end'] == 'Kielce'
        assert body['order'] == ['b']

    def test_settings_are_per_user(self, client, make_user):
        _, alice = make_user('alice@example.com')
        _, bob = make_user('bob@example.com')
        client.post('/api/planner/settings', headers=alice, json={'date': '2025-02-03', 'start': 'Łódź'})
        body = client.get('/api/planner/settings?date=2025-02-03', headers=bob).get_json()
        assert body['start'] == 'Warszawa'
