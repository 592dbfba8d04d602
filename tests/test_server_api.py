"""
HTTP API tests for the payment, admin and monitoring endpoints.
Uses the Flask test client against an in-memory SQLite database, a fixed
BTC/USD rate and the local dev Lightning provider.
"""
import json
import os
import time
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import patch, MagicMock

# Force DEV_MODE and test DB before importing app
os.environ['DEV_MODE'] = 'true'
os.environ['DATABASE_URL'] = 'sqlite://'

from server import app
from models import db, User, RunnerProfile, Job, Payment, utcnow
from core.preimage import generate_preimage
from services.auth_service import generate_api_key
from services.rate_limiter import all_limiters
from services.rate_oracle import FixedRateOracle, set_rate_oracle
from services.lightning_service import DevLightningService, set_lightning_service

import pytest

FAKE_BOLT11 = 'lnbc750u1pjq8zkspp5qqqsyqcyq5rqwzqfqqqsyqcyq5rqwzqfqqqsyqcyq5rqwzqfqypq'


@pytest.fixture
def dev_lightning():
    return DevLightningService()


@pytest.fixture
def client(dev_lightning):
    app.config['TESTING'] = True
    with app.app_context():
        db.create_all()
        for limiter in all_limiters():
            limiter.reset()
        set_rate_oracle(FixedRateOracle(1500))
        set_lightning_service(dev_lightning)
        yield app.test_client()
        db.session.remove()
        db.drop_all()


def _user(username, role='client'):
    raw, key_hash = generate_api_key()
    user = User(username=username, role=role, api_key_hash=key_hash)
    db.session.add(user)
    db.session.commit()
    return user, {'Authorization': f'Bearer {raw}'}


@pytest.fixture
def seeded(client):
    """A $50.00 job awaiting payment, with client, runner, outsider and admin."""
    client_user, client_h = _user('alice')
    runner_user, runner_h = _user('bob', role='runner')
    _, outsider_h = _user('mallory')
    _, admin_h = _user('ops', role='admin')
    db.session.add(RunnerProfile(user_id=runner_user.id, display_name='Bob',
                                 lightning_address='bob@wallet.example'))
    job = Job(title='Deliver a package across town', price_cents=5000,
              status='awaiting_payment', client_id=client_user.id, runner_id=runner_user.id)
    db.session.add(job)
    db.session.commit()
    return SimpleNamespace(job_id=job.id, client=client_h, runner=runner_h,
                           outsider=outsider_h, admin=admin_h)


def _decoded(payment_hash, amount_sats):
    return SimpleNamespace(payment_hash=payment_hash, amount_msat=amount_sats * 1000,
                           date=int(time.time()), expiry=3600, description='errand', currency='bc')


def _register(client, seeded, payment_hash, amount_sats=75000):
    """Record a runner invoice for payment_hash as the job's pending payment."""
    with patch('core.invoice.bolt11.decode', return_value=_decoded(payment_hash, amount_sats)):
        return client.post('/payments/invoices', headers=seeded.client,
                           json={'job_id': seeded.job_id, 'bolt11': FAKE_BOLT11})


# ===================================================================
# /health
# ===================================================================

class TestHealth:
    def test_health(self, client):
        resp = client.get('/health')
        assert resp.status_code == 200
        assert resp.get_json()['status'] == 'healthy'

    def test_request_id_echoed(self, client):
        resp = client.get('/health', headers={'X-Request-ID': 'trace-123'})
        assert resp.headers['X-Request-ID'] == 'trace-123'


# ===================================================================
# Authentication
# ===================================================================

class TestAuth:
    def test_missing_header(self, client, seeded):
        resp = client.get(f'/payments/instruction?job_id={seeded.job_id}')
        assert resp.status_code == 401
        assert resp.get_json()['code'] == 'UNAUTHORIZED'

    def test_bad_key(self, client, seeded):
        resp = client.get(f'/payments/instruction?job_id={seeded.job_id}',
                          headers={'Authorization': 'Bearer nope'})
        assert resp.status_code == 401

    def test_admin_route_rejects_client(self, client, seeded):
        resp = client.get('/payments', headers=seeded.client)
        assert resp.status_code == 403
        assert resp.get_json()['code'] == 'ADMIN_REQUIRED'


# ===================================================================
# Payment instruction
# ===================================================================

class TestInstruction:
    def test_amount_from_price_and_rate(self, client, seeded):
        resp = client.get(f'/payments/instruction?job_id={seeded.job_id}', headers=seeded.client)
        assert resp.status_code == 200
        data = resp.get_json()
        assert data['amount_cents'] == 5000
        assert data['amount_sats'] == 75000
        assert data['fiat_equiv_usd'] == 50.0
        assert data['runner']['lightning_address'] == 'bob@wallet.example'
        assert data['pending_payment'] is None
        assert resp.headers['X-RateLimit-Remaining'] == '9'

    def test_runner_cannot_fetch_instruction(self, client, seeded):
        resp = client.get(f'/payments/instruction?job_id={seeded.job_id}', headers=seeded.runner)
        assert resp.status_code == 403

    def test_unknown_job(self, client, seeded):
        resp = client.get('/payments/instruction?job_id=9999', headers=seeded.client)
        assert resp.status_code == 404
        assert resp.get_json()['code'] == 'JOB_NOT_FOUND'

    def test_bad_job_id(self, client, seeded):
        resp = client.get('/payments/instruction?job_id=abc', headers=seeded.client)
        assert resp.status_code == 400
        assert resp.get_json()['code'] == 'INVALID_JOB_ID'


# ===================================================================
# Invoice validation and registration
# ===================================================================

class TestInvoices:
    def test_validate_exact_amount(self, client, seeded):
        with patch('core.invoice.bolt11.decode', return_value=_decoded('ab' * 32, 75000)):
            resp = client.post('/payments/validate-invoice', headers=seeded.client,
                               json={'job_id': seeded.job_id, 'bolt11': FAKE_BOLT11})
        assert resp.status_code == 200
        data = resp.get_json()
        assert data['is_valid'] is True
        assert data['payment_hash'] == 'ab' * 32

    def test_validate_amount_mismatch(self, client, seeded):
        with patch('core.invoice.bolt11.decode', return_value=_decoded('ab' * 32, 75001)):
            resp = client.post('/payments/validate-invoice', headers=seeded.client,
                               json={'job_id': seeded.job_id, 'bolt11': FAKE_BOLT11})
        assert resp.status_code == 400
        data = resp.get_json()
        assert data['is_valid'] is False
        assert data['reason'] == 'AMOUNT_MISMATCH'

    def test_validate_garbage(self, client, seeded):
        resp = client.post('/payments/validate-invoice', headers=seeded.client,
                           json={'job_id': seeded.job_id, 'bolt11': 'not-an-invoice'})
        assert resp.status_code == 400
        assert resp.get_json()['reason'] == 'INVALID_INVOICE'

    def test_register_runner_invoice(self, client, seeded):
        with patch('core.invoice.bolt11.decode', return_value=_decoded('ab' * 32, 75000)):
            resp = client.post('/payments/invoices', headers=seeded.client,
                               json={'job_id': seeded.job_id, 'bolt11': FAKE_BOLT11})
        assert resp.status_code == 201
        data = resp.get_json()
        assert data['status'] == 'pending'
        assert data['amount_sats'] == 75000
        assert data['payment_request'] == FAKE_BOLT11

        resp = client.get(f'/payments/instruction?job_id={seeded.job_id}', headers=seeded.client)
        assert resp.get_json()['pending_payment']['payment_hash'] == 'ab' * 32

    def test_second_active_invoice_conflicts(self, client, seeded):
        with patch('core.invoice.bolt11.decode', return_value=_decoded('ab' * 32, 75000)):
            client.post('/payments/invoices', headers=seeded.client,
                        json={'job_id': seeded.job_id, 'bolt11': FAKE_BOLT11})
        with patch('core.invoice.bolt11.decode', return_value=_decoded('cd' * 32, 75000)):
            resp = client.post('/payments/invoices', headers=seeded.client,
                               json={'job_id': seeded.job_id, 'bolt11': FAKE_BOLT11})
        assert resp.status_code == 409
        assert resp.get_json()['code'] == 'PAYMENT_EXISTS'

    def test_register_wrong_amount(self, client, seeded):
        with patch('core.invoice.bolt11.decode', return_value=_decoded('ab' * 32, 70000)):
            resp = client.post('/payments/invoices', headers=seeded.client,
                               json={'job_id': seeded.job_id, 'bolt11': FAKE_BOLT11})
        assert resp.status_code == 400
        assert resp.get_json()['code'] == 'AMOUNT_MISMATCH'
        assert Payment.query.count() == 0

    def test_register_after_rate_change_uses_instruction_amount(self, client, seeded):
        resp = client.get(f'/payments/instruction?job_id={seeded.job_id}', headers=seeded.client)
        assert resp.get_json()['amount_sats'] == 75000
        # The runner invoiced the instructed amount; the market moved meanwhile
        set_rate_oracle(FixedRateOracle(1501))
        resp = _register(client, seeded, 'ab' * 32, 75000)
        assert resp.status_code == 201
        assert resp.get_json()['amount_sats'] == 75000

    def test_register_without_instruction_captures_quote(self, client, seeded):
        assert _register(client, seeded, 'ab' * 32, 75000).status_code == 201
        set_rate_oracle(FixedRateOracle(3000))
        resp = client.get(f'/payments/instruction?job_id={seeded.job_id}', headers=seeded.client)
        assert resp.get_json()['amount_sats'] == 75000


# ===================================================================
# Confirmation
# ===================================================================

class TestConfirm:
    def _confirm(self, client, headers, job_id, preimage, payment_hash):
        return client.post('/payments/confirm', headers=headers, json={
            'job_id': job_id, 'payment_hash': payment_hash, 'preimage': preimage, 'method': 'webln',
        })

    def test_confirm_then_conflict(self, client, seeded):
        preimage, payment_hash = generate_preimage()
        assert _register(client, seeded, payment_hash).status_code == 201
        resp = self._confirm(client, seeded.client, seeded.job_id, preimage, payment_hash)
        assert resp.status_code == 200
        data = resp.get_json()
        assert data['success'] is True
        assert data['status'] == 'payment_confirmed'
        assert data['amount_sats'] == 75000
        assert data['verification_level'] == 'cryptographic'
        assert db.session.get(Job, seeded.job_id).status == 'payment_confirmed'

        resp = self._confirm(client, seeded.client, seeded.job_id, preimage, payment_hash)
        assert resp.status_code == 409
        assert resp.get_json()['code'] == 'PAYMENT_ALREADY_CONFIRMED'
        assert Payment.query.filter_by(status='confirmed').count() == 1

    def test_self_generated_pair_rejected(self, client, seeded):
        """A matching preimage for a hash nobody invoiced proves nothing was paid."""
        preimage, payment_hash = generate_preimage()
        resp = self._confirm(client, seeded.client, seeded.job_id, preimage, payment_hash)
        assert resp.status_code == 404
        assert resp.get_json()['code'] == 'PAYMENT_NOT_FOUND'
        assert db.session.get(Job, seeded.job_id).status == 'awaiting_payment'
        assert Payment.query.count() == 0

    def test_self_generated_pair_rejected_with_invoice_pending(self, client, seeded):
        _, issued_hash = generate_preimage()
        assert _register(client, seeded, issued_hash).status_code == 201
        preimage, payment_hash = generate_preimage()
        resp = self._confirm(client, seeded.client, seeded.job_id, preimage, payment_hash)
        assert resp.status_code == 404
        assert Payment.query.filter_by(payment_hash=issued_hash).one().status == 'pending'
        assert db.session.get(Job, seeded.job_id).status == 'awaiting_payment'

    def test_non_client_forbidden(self, client, seeded):
        preimage, payment_hash = generate_preimage()
        resp = self._confirm(client, seeded.runner, seeded.job_id, preimage, payment_hash)
        assert resp.status_code == 403
        assert db.session.get(Job, seeded.job_id).status == 'awaiting_payment'

    def test_malformed_preimage(self, client, seeded):
        _, payment_hash = generate_preimage()
        resp = self._confirm(client, seeded.client, seeded.job_id, 'xyz', payment_hash)
        assert resp.status_code == 400
        assert resp.get_json()['code'] == 'INVALID_PREIMAGE_FORMAT'

    def test_preimage_mismatch(self, client, seeded):
        preimage, _ = generate_preimage()
        _, payment_hash = generate_preimage()
        resp = self._confirm(client, seeded.client, seeded.job_id, preimage, payment_hash)
        assert resp.status_code == 400
        assert resp.get_json()['code'] == 'PREIMAGE_MISMATCH'
        assert Payment.query.count() == 0

    def test_unknown_job(self, client, seeded):
        preimage, payment_hash = generate_preimage()
        resp = self._confirm(client, seeded.client, 4242, preimage, payment_hash)
        assert resp.status_code == 404

    def test_confirm_registered_invoice(self, client, seeded):
        preimage, payment_hash = generate_preimage()
        with patch('core.invoice.bolt11.decode', return_value=_decoded(payment_hash, 75000)):
            client.post('/payments/invoices', headers=seeded.client,
                        json={'job_id': seeded.job_id, 'bolt11': FAKE_BOLT11})
        resp = self._confirm(client, seeded.client, seeded.job_id, preimage, payment_hash)
        assert resp.status_code == 200
        payment = Payment.query.filter_by(payment_hash=payment_hash).one()
        assert payment.status == 'confirmed'
        assert payment.payment_method == 'webln'
        assert Payment.query.count() == 1

    def test_rate_limited_after_five(self, client, seeded):
        for _ in range(5):
            resp = client.post('/payments/confirm', headers=seeded.client, json={})
            assert resp.status_code == 400
        resp = client.post('/payments/confirm', headers=seeded.client, json={})
        assert resp.status_code == 429
        assert resp.get_json()['code'] == 'RATE_LIMITED'
        assert int(resp.headers['Retry-After']) >= 1
        assert resp.headers['X-RateLimit-Remaining'] == '0'


# ===================================================================
# Provider-issued invoices
# ===================================================================

class TestProviderInvoices:
    def test_provider_invoice_settles_on_check(self, client, seeded, dev_lightning):
        resp = client.post('/payments/invoices', headers=seeded.client, json={'job_id': seeded.job_id})
        assert resp.status_code == 201
        payment_hash = resp.get_json()['payment_hash']

        resp = client.post(f'/payments/{payment_hash}/check', headers=seeded.client)
        assert resp.status_code == 200
        assert resp.get_json()['paid'] is False

        dev_lightning.mark_paid(payment_hash)
        resp = client.post(f'/payments/{payment_hash}/check', headers=seeded.runner)
        assert resp.status_code == 200
        data = resp.get_json()
        assert data['paid'] is True
        assert data['payment']['status'] == 'confirmed'
        assert data['payment']['payment_method'] == 'provider'
        assert db.session.get(Job, seeded.job_id).status == 'payment_confirmed'

    def test_outsider_cannot_view(self, client, seeded):
        resp = client.post('/payments/invoices', headers=seeded.client, json={'job_id': seeded.job_id})
        payment_hash = resp.get_json()['payment_hash']
        assert client.get(f'/payments/{payment_hash}', headers=seeded.outsider).status_code == 403
        assert client.get(f'/payments/{payment_hash}', headers=seeded.runner).status_code == 200
        assert client.get(f'/payments/{payment_hash}', headers=seeded.admin).status_code == 200

    def test_provider_down(self, client, seeded):
        from core.errors import unavailable
        broken = MagicMock(provider_name='lnbits')
        broken.create_invoice.side_effect = unavailable("connection refused to 10.0.0.5")
        set_lightning_service(broken)
        resp = client.post('/payments/invoices', headers=seeded.client, json={'job_id': seeded.job_id})
        assert resp.status_code == 503
        assert '10.0.0.5' not in resp.get_data(as_text=True)


# ===================================================================
# Proof upload
# ===================================================================

class TestProof:
    PNG = 'data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=='

    def test_proof_goes_to_manual_review(self, client, seeded):
        resp = client.post('/payments/invoices', headers=seeded.client, json={'job_id': seeded.job_id})
        payment_hash = resp.get_json()['payment_hash']
        resp = client.post('/payments/proof', headers=seeded.client, json={
            'job_id': seeded.job_id, 'payment_hash': payment_hash, 'proof': self.PNG,
        })
        assert resp.status_code == 200
        data = resp.get_json()
        assert data['status'] == 'pending_manual_review'
        assert data['payment']['status'] == 'pending'
        assert data['payment']['verification_level'] == 'pending_manual'
        assert db.session.get(Job, seeded.job_id).status == 'awaiting_payment'

    def test_proof_rejects_non_image(self, client, seeded):
        resp = client.post('/payments/proof', headers=seeded.client, json={
            'job_id': seeded.job_id, 'payment_hash': 'ab' * 32, 'proof': 'data:text/html;base64,PGgxPg==',
        })
        assert resp.status_code == 400
        assert resp.get_json()['code'] == 'INVALID_PROOF_IMAGE'


# ===================================================================
# Admin
# ===================================================================

class TestAdmin:
    def _confirmed(self, client, seeded):
        preimage, payment_hash = generate_preimage()
        _register(client, seeded, payment_hash)
        client.post('/payments/confirm', headers=seeded.client, json={
            'job_id': seeded.job_id, 'payment_hash': payment_hash, 'preimage': preimage,
        })
        return payment_hash

    def test_list_payments(self, client, seeded):
        self._confirmed(client, seeded)
        resp = client.get('/payments?status=confirmed', headers=seeded.admin)
        assert resp.status_code == 200
        data = resp.get_json()
        assert data['total'] == 1
        assert data['payments'][0]['status'] == 'confirmed'

    def test_list_rejects_unknown_status(self, client, seeded):
        resp = client.get('/payments?status=paid', headers=seeded.admin)
        assert resp.status_code == 400
        assert resp.get_json()['code'] == 'INVALID_STATUS'

    def test_dispute(self, client, seeded):
        payment_hash = self._confirmed(client, seeded)
        resp = client.post(f'/admin/payments/{payment_hash}/dispute', headers=seeded.admin, json={})
        assert resp.status_code == 400
        resp = client.post(f'/admin/payments/{payment_hash}/dispute', headers=seeded.admin,
                           json={'reason': 'chargeback claim'})
        assert resp.status_code == 200
        data = resp.get_json()
        assert data['status'] == 'disputed'
        assert data['verification_level'] == 'disputed'

    def test_dispute_unknown_payment(self, client, seeded):
        resp = client.post(f'/admin/payments/{"ef" * 32}/dispute', headers=seeded.admin,
                           json={'reason': 'x'})
        assert resp.status_code == 404

    def test_payout_requires_paid_job(self, client, seeded):
        resp = client.post(f'/admin/payouts/{seeded.job_id}', headers=seeded.admin)
        assert resp.status_code == 400
        assert resp.get_json()['code'] == 'JOB_NOT_PAID'

    def test_reconcile_settles_payout_left_pending(self, client, seeded):
        from core.errors import unavailable
        from services.lightning_service import ProviderPaymentStatus
        self._confirmed(client, seeded)
        preimage, payout_hash = generate_preimage()
        provider = MagicMock(provider_name='lnbits')
        provider.fetch_lightning_address_invoice.return_value = FAKE_BOLT11
        provider.pay_invoice.side_effect = unavailable('timeout')
        set_lightning_service(provider)
        with patch('core.invoice.bolt11.decode', return_value=_decoded(payout_hash, 75000)):
            resp = client.post(f'/admin/payouts/{seeded.job_id}', headers=seeded.admin)
        assert resp.status_code == 503
        assert Payment.query.filter_by(payment_hash=payout_hash).one().status == 'pending'

        provider.lookup_payment.return_value = ProviderPaymentStatus(paid=True, preimage=preimage)
        resp = client.post('/admin/payouts/reconcile', headers=seeded.admin)
        assert resp.status_code == 200
        assert resp.get_json() == {"checked": 1, "settled": 1, "failed": 0, "pending": 0}
        assert Payment.query.filter_by(payment_hash=payout_hash).one().status == 'confirmed'

    def test_reconcile_requires_admin(self, client, seeded):
        assert client.post('/admin/payouts/reconcile', headers=seeded.client).status_code == 403


# ===================================================================
# Provider webhook
# ===================================================================

class TestWebhook:
    SECRET = 'whsec_test'

    @pytest.fixture(autouse=True)
    def _webhook_secret(self, monkeypatch):
        import config
        monkeypatch.setattr(config.Config, 'LNBITS_WEBHOOK_SECRET', self.SECRET)

    def _post(self, client, body, timestamp=None, secret=None, headers=None):
        from services.auth_service import sign_webhook
        raw = json.dumps(body)
        if timestamp is None:
            timestamp = str(int(time.time() * 1000))
        if headers is None:
            headers = {
                'X-Webhook-Signature': sign_webhook(secret or self.SECRET, timestamp, raw),
                'X-Webhook-Timestamp': timestamp,
            }
        return client.post('/payments/webhook', data=raw, content_type='application/json', headers=headers)

    def _provider_invoice(self, client, seeded):
        resp = client.post('/payments/invoices', headers=seeded.client, json={'job_id': seeded.job_id})
        return resp.get_json()['payment_hash']

    def test_signed_notification_confirms_settled_invoice(self, client, seeded, dev_lightning):
        payment_hash = self._provider_invoice(client, seeded)
        dev_lightning.mark_paid(payment_hash)
        resp = self._post(client, {'payment_hash': payment_hash})
        assert resp.status_code == 200
        data = resp.get_json()
        assert data['paid'] is True
        assert data['payment']['status'] == 'confirmed'
        assert data['payment']['payment_method'] == 'provider'
        assert db.session.get(Job, seeded.job_id).status == 'payment_confirmed'

    def test_signed_notification_for_unsettled_invoice(self, client, seeded):
        payment_hash = self._provider_invoice(client, seeded)
        resp = self._post(client, {'payment_hash': payment_hash})
        assert resp.status_code == 200
        assert resp.get_json()['paid'] is False
        assert db.session.get(Job, seeded.job_id).status == 'awaiting_payment'

    def test_bad_signature(self, client, seeded, dev_lightning):
        payment_hash = self._provider_invoice(client, seeded)
        dev_lightning.mark_paid(payment_hash)
        resp = self._post(client, {'payment_hash': payment_hash}, secret='not-the-secret')
        assert resp.status_code == 401
        assert resp.get_json()['code'] == 'INVALID_WEBHOOK_SIGNATURE'
        assert db.session.get(Job, seeded.job_id).status == 'awaiting_payment'

    def test_stale_timestamp(self, client, seeded, dev_lightning):
        payment_hash = self._provider_invoice(client, seeded)
        dev_lightning.mark_paid(payment_hash)
        six_minutes_ago = str(int((time.time() - 360) * 1000))
        resp = self._post(client, {'payment_hash': payment_hash}, timestamp=six_minutes_ago)
        assert resp.status_code == 401
        assert resp.get_json()['code'] == 'WEBHOOK_TIMESTAMP_EXPIRED'
        assert db.session.get(Job, seeded.job_id).status == 'awaiting_payment'

    def test_missing_headers(self, client, seeded):
        resp = self._post(client, {'payment_hash': 'ab' * 32}, headers={})
        assert resp.status_code == 401
        assert resp.get_json()['code'] == 'MISSING_WEBHOOK_SIGNATURE'

    def test_unknown_payment(self, client, seeded):
        resp = self._post(client, {'payment_hash': 'ab' * 32})
        assert resp.status_code == 404
        assert resp.get_json()['code'] == 'PAYMENT_NOT_FOUND'

    def test_missing_payment_hash(self, client, seeded):
        resp = self._post(client, {})
        assert resp.status_code == 400

    def test_disabled_without_secret(self, client, seeded, monkeypatch):
        import config
        monkeypatch.setattr(config.Config, 'LNBITS_WEBHOOK_SECRET', '')
        resp = self._post(client, {'payment_hash': 'ab' * 32}, secret='anything')
        assert resp.status_code == 503
        assert resp.get_json()['code'] == 'WEBHOOK_NOT_CONFIGURED'


# ===================================================================
# Monitoring
# ===================================================================

class TestMonitoring:
    def _stale_invoice(self, client, seeded, hours=3):
        resp = client.post('/payments/invoices', headers=seeded.client, json={'job_id': seeded.job_id})
        payment = Payment.query.filter_by(payment_hash=resp.get_json()['payment_hash']).one()
        payment.created_at = utcnow() - timedelta(hours=hours)
        db.session.commit()
        return payment.payment_hash

    def test_metrics(self, client, seeded):
        resp = client.get('/monitoring/payments', headers=seeded.client)
        assert resp.status_code == 200
        data = resp.get_json()
        assert data['metrics']['total_payments_24h'] == 0
        assert data['metrics']['success_rate_24h'] == 0.0
        assert data['stuck_payments'] == []

    def test_stuck_then_cleaned_up(self, client, seeded):
        payment_hash = self._stale_invoice(client, seeded)

        data = client.get('/monitoring/payments', headers=seeded.client).get_json()
        assert data['metrics']['stuck_payments'] == 1
        assert data['stuck_payments'][0]['payment_hash'] == payment_hash

        resp = client.post('/monitoring/cleanup/expired-invoices', headers=seeded.admin)
        assert resp.status_code == 200
        assert resp.get_json()['expired_invoices_cleaned'] == 1
        resp = client.post('/monitoring/cleanup/expired-invoices', headers=seeded.admin)
        assert resp.get_json()['expired_invoices_cleaned'] == 0

        data = client.get('/monitoring/payments', headers=seeded.client).get_json()
        assert data['metrics']['stuck_payments'] == 0
        assert db.session.get(Job, seeded.job_id).status == 'awaiting_payment'

        # The job's slot is free for a new invoice
        resp = client.post('/payments/invoices', headers=seeded.client, json={'job_id': seeded.job_id})
        assert resp.status_code == 201

    def test_expired_invoice_cannot_confirm(self, client, seeded, dev_lightning):
        payment_hash = self._stale_invoice(client, seeded)
        client.post('/monitoring/cleanup/expired-invoices', headers=seeded.admin)
        preimage = dev_lightning.mark_paid(payment_hash)
        resp = client.post('/payments/confirm', headers=seeded.client, json={
            'job_id': seeded.job_id, 'payment_hash': payment_hash, 'preimage': preimage,
        })
        assert resp.status_code == 409
        assert resp.get_json()['code'] == 'PAYMENT_EXPIRED'

    def test_cleanup_requires_admin(self, client, seeded):
        resp = client.post('/monitoring/cleanup/expired-invoices', headers=seeded.client)
        assert resp.status_code == 403

    def test_lightning_health_up(self, client, seeded):
        resp = client.get('/monitoring/lightning/health', headers=seeded.client)
        assert resp.status_code == 200
        assert resp.get_json()['connected'] is True

    def test_lightning_health_down(self, client, seeded):
        down = MagicMock(provider_name='lnbits')
        down.check_connection.return_value = False
        set_lightning_service(down)
        resp = client.get('/monitoring/lightning/health', headers=seeded.client)
        assert resp.status_code == 503
        assert resp.get_json()['connected'] is False

    def test_dashboard(self, client, seeded):
        self._stale_invoice(client, seeded)
        resp = client.get('/monitoring/dashboard', headers=seeded.admin)
        assert resp.status_code == 200
        data = resp.get_json()
        assert data['stuck_payments']['count'] == 1
        assert data['stuck_payments']['total_sats'] == 75000
        assert data['alerts']['has_stuck_payments'] is True
        assert data['alerts']['lightning_down'] is False

    def test_alerts_feed(self, client, seeded):
        from services.alert_service import Alert, get_alert_dispatcher
        get_alert_dispatcher().dispatch(Alert('lightning_down', 'critical', 'provider unreachable'))
        resp = client.get('/monitoring/alerts?limit=1', headers=seeded.client)
        assert resp.status_code == 200
        data = resp.get_json()
        assert data['count'] == 1
        assert data['alerts'][0]['kind'] == 'lightning_down'
