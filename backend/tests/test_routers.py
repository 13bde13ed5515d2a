"""
Tests for the HTTP surface: admin, roster forms and internal sync routes.

Key tests:
1. Mutations commit and return without waiting for propagation
2. Each mutation hands the right trigger to the dispatcher
3. Admin routes require the admin role
4. Internal sync routes require the internal key
"""
from datetime import timedelta

from regsync.models.db_models import FormDB, FormStatus, PaymentDB, PaymentStatus, UserDB
from regsync.models.ledger import TriggerType


INTERNAL = {"X-Internal-Key": "internal-test-key"}


def admin(db, factories, login_as):
    user = factories.user(db, email="admin@agneepath.test", role="admin")
    login_as(user)
    return user


# =============================================================================
# AUTH
# =============================================================================

class TestAdminAccess:

    def test_non_admin_token_rejected(self, db, factories, client, bearer):
        user = factories.user(db)

        response = client.get("/admin/due-payments", headers=bearer(user))

        assert response.status_code == 403

    def test_admin_token_accepted(self, db, factories, client, bearer):
        user = factories.user(db, role="admin")

        response = client.get("/admin/due-payments", headers=bearer(user))

        assert response.status_code == 200

    def test_expired_token_rejected(self, db, factories, client, bearer):
        user = factories.user(db, role="admin")

        response = client.get("/admin/due-payments", headers=bearer(user, expires_in=timedelta(minutes=-5)))

        assert response.status_code == 401

    def test_deleted_admin_rejected(self, db, factories, client, bearer):
        user = factories.user(db, role="admin", deleted=True)

        response = client.get("/admin/due-payments", headers=bearer(user))

        assert response.status_code == 401

    def test_invalid_token_rejected(self, client):
        response = client.get("/admin/due-payments", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401


# =============================================================================
# ADMIN: DUE PAYMENTS
# =============================================================================

class TestDuePaymentsRoute:

    def test_lists_outstanding_balances(self, db, factories, client, login_as):
        admin(db, factories, login_as)
        user = factories.user(db, name="Alice")
        payment = factories.payment(db, user, baseline={"Football": 11}, transaction_id="TXN-A")
        form = factories.form(db, user, "Football", 13)
        settled = factories.user(db)
        factories.payment(db, settled, baseline={"Cricket": 15})
        factories.form(db, settled, "Cricket", 15)

        response = client.get("/admin/due-payments")

        assert response.status_code == 200
        data = response.json()["data"]
        assert len(data) == 1
        item = data[0]
        assert item["user_id"] == user.id
        assert item["payment_id"] == payment.id
        assert item["transaction_id"] == "TXN-A"
        assert item["player_difference"] == 2
        assert item["amount_due"] == 1600
        assert item["status"] == "pending"
        assert item["forms"] == [{
            "form_id": form.id,
            "sport": "Football",
            "original_players": 11,
            "current_players": 13,
            "difference": 2,
        }]

    def test_user_reconciliation(self, db, factories, client, login_as):
        admin(db, factories, login_as)
        user = factories.user(db)
        factories.payment(db, user, baseline={"Football": 15})
        factories.form(db, user, "Football", 12)

        response = client.get(f"/admin/users/{user.id}/reconciliation")

        data = response.json()["data"]
        assert data["player_difference"] == -3
        assert data["amount_due"] == 0
        assert data["is_due"] is False

    def test_reconciliation_without_payment_is_null(self, db, factories, client, login_as):
        admin(db, factories, login_as)
        user = factories.user(db)

        response = client.get(f"/admin/users/{user.id}/reconciliation")

        assert response.status_code == 200
        assert response.json()["data"] is None

    def test_reconciliation_unknown_user(self, db, factories, client, login_as):
        admin(db, factories, login_as)

        assert client.get("/admin/users/nobody/reconciliation").status_code == 404


# =============================================================================
# ADMIN: MUTATIONS
# =============================================================================

class TestAdminMutations:

    def test_update_user_fields(self, db, factories, client, login_as, dispatcher):
        admin(db, factories, login_as)
        user = factories.user(db, name="Old Name")

        response = client.patch(f"/admin/users/{user.id}", json={"name": "New Name"})

        assert response.status_code == 200
        assert response.json()["data"]["name"] == "New Name"
        db.expire_all()
        assert db.get(UserDB, user.id).name == "New Name"
        assert dispatcher.trigger_types == [TriggerType.USER_UPDATED]
        assert dispatcher.triggers[0].previous_email is None

    def test_email_change_carries_previous_email(self, db, factories, client, login_as, dispatcher):
        admin(db, factories, login_as)
        user = factories.user(db, email="old@uni.test")

        client.patch(f"/admin/users/{user.id}", json={"email": "captain@ashoka.edu.in"})

        assert dispatcher.triggers[0].previous_email == "old@uni.test"

    def test_university_change_carries_previous_email(self, db, factories, client, login_as, dispatcher):
        admin(db, factories, login_as)
        user = factories.user(db, email="captain@uni.test", university_name="Old University")

        client.patch(f"/admin/users/{user.id}", json={"university_name": "New University"})

        assert dispatcher.triggers[0].previous_email == "captain@uni.test"

    def test_email_clash(self, db, factories, client, login_as, dispatcher):
        admin(db, factories, login_as)
        factories.user(db, email="taken@ashoka.edu.in")
        user = factories.user(db)

        response = client.patch(f"/admin/users/{user.id}", json={"email": "taken@ashoka.edu.in"})

        assert response.status_code == 409
        assert dispatcher.triggers == []

    def test_update_rosters(self, db, factories, client, login_as, dispatcher):
        admin(db, factories, login_as)
        user = factories.user(db)
        existing = factories.form(db, user, "Football", 11)

        response = client.patch(f"/admin/users/{user.id}", json={
            "submitted_forms": {
                "Football": {"status": "submitted", "fields": {"playerFields": factories.players(13)}},
                "Cricket": {"status": "draft", "fields": {"playerFields": factories.players(2)}},
            },
        })

        assert response.status_code == 200
        db.expire_all()
        forms = {f.title: f for f in db.query(FormDB).filter(FormDB.owner_id == user.id)}
        assert forms["Football"].id == existing.id
        assert len(forms["Football"].fields["playerFields"]) == 13
        assert len(forms["Cricket"].fields["playerFields"]) == 2
        assert dispatcher.trigger_types == [
            TriggerType.USER_UPDATED, TriggerType.FORM_SAVED, TriggerType.FORM_SAVED,
        ]

    def test_update_unknown_user(self, db, factories, client, login_as):
        admin(db, factories, login_as)

        assert client.patch("/admin/users/nobody", json={"name": "x"}).status_code == 404

    def test_soft_delete_and_restore(self, db, factories, client, login_as, dispatcher):
        admin(db, factories, login_as)
        user = factories.user(db)

        deleted = client.patch(f"/admin/registrations/{user.id}", json={"deleted": True})
        db.expire_all()
        assert db.get(UserDB, user.id).deleted is True
        restored = client.patch(f"/admin/registrations/{user.id}", json={"deleted": False})
        db.expire_all()

        assert deleted.json()["message"] == "User deleted successfully"
        assert restored.json()["message"] == "User restored successfully"
        assert db.get(UserDB, user.id).deleted is False
        assert dispatcher.trigger_types == [TriggerType.USER_DELETED, TriggerType.USER_DELETED]

    def test_registration_status_requires_flag(self, db, factories, client, login_as):
        admin(db, factories, login_as)
        user = factories.user(db)

        assert client.patch(f"/admin/registrations/{user.id}", json={}).status_code == 400

    def test_confirming_form_triggers_submission(self, db, factories, client, login_as, dispatcher):
        admin(db, factories, login_as)
        user = factories.user(db)
        form = factories.form(db, user, "Football", 11)

        response = client.patch(f"/admin/forms/{form.id}/status", json={"status": "confirmed"})

        assert response.json()["data"]["status"] == "confirmed"
        assert dispatcher.trigger_types == [TriggerType.FORM_SUBMITTED]
        assert dispatcher.triggers[0].record_id == form.id

    def test_rejecting_form_triggers_save(self, db, factories, client, login_as, dispatcher):
        admin(db, factories, login_as)
        user = factories.user(db)
        form = factories.form(db, user, "Football", 11)

        client.patch(f"/admin/forms/{form.id}/status", json={"status": "rejected"})

        assert dispatcher.trigger_types == [TriggerType.FORM_SAVED]


class TestVerifyPayment:

    def test_snapshot_frozen_at_verification(self, db, factories, client, login_as, dispatcher):
        admin(db, factories, login_as)
        user = factories.user(db)
        factories.form(db, user, "Football", 11)
        payment = factories.payment(db, user, status=PaymentStatus.PENDING)

        response = client.post(f"/admin/payments/{payment.id}/verify")

        assert response.status_code == 200
        db.expire_all()
        stored = db.get(PaymentDB, payment.id)
        assert stored.status == PaymentStatus.VERIFIED
        assert stored.verified_at is not None
        assert stored.payment_data == {"submittedForms": {"Football": {"Players": 11}}}
        assert db.get(UserDB, user.id).payment_done is True
        assert dispatcher.trigger_types == [TriggerType.PAYMENT_VERIFIED]

    def test_existing_snapshot_kept(self, db, factories, client, login_as):
        admin(db, factories, login_as)
        user = factories.user(db)
        factories.form(db, user, "Football", 13)
        payment = factories.payment(db, user, baseline={"Football": 11}, status=PaymentStatus.PENDING)

        client.post(f"/admin/payments/{payment.id}/verify")

        db.expire_all()
        assert db.get(PaymentDB, payment.id).payment_data == {"submittedForms": {"Football": {"Players": 11}}}

    def test_already_verified(self, db, factories, client, login_as, dispatcher):
        admin(db, factories, login_as)
        user = factories.user(db)
        payment = factories.payment(db, user, baseline={"Football": 11})

        response = client.post(f"/admin/payments/{payment.id}/verify")

        assert response.status_code == 409
        assert dispatcher.triggers == []

    def test_ownerless_payment(self, db, factories, client, login_as):
        admin(db, factories, login_as)
        payment = factories.payment(db, None, status=PaymentStatus.PENDING)

        assert client.post(f"/admin/payments/{payment.id}/verify").status_code == 400


# =============================================================================
# ROSTER FORMS
# =============================================================================

class TestFormRoutes:

    def test_save_creates_draft(self, db, factories, client, login_as, dispatcher):
        user = factories.user(db)
        login_as(user)

        response = client.put("/forms/Football", json={"fields": {"playerFields": factories.players(11)}})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "draft"
        assert data["players"] == 11
        assert dispatcher.trigger_types == [TriggerType.FORM_SAVED]
        assert dispatcher.triggers[0].record_id == data["id"]

    def test_save_updates_existing(self, db, factories, client, login_as):
        user = factories.user(db)
        form = factories.form(db, user, "Football", 11, status=FormStatus.SUBMITTED)
        login_as(user)

        response = client.put("/forms/Football", json={"fields": {"playerFields": factories.players(13)}})

        assert response.json()["data"]["id"] == form.id
        assert response.json()["data"]["players"] == 13

    def test_locked_form_rejected(self, db, factories, client, login_as, dispatcher):
        user = factories.user(db)
        factories.form(db, user, "Football", 11, status=FormStatus.CONFIRMED)
        login_as(user)

        response = client.put("/forms/Football", json={"fields": {"playerFields": []}})

        assert response.status_code == 409
        assert dispatcher.triggers == []

    def test_submit(self, db, factories, client, login_as, dispatcher):
        user = factories.user(db)
        form = factories.form(db, user, "Football", 11, status=FormStatus.DRAFT)
        login_as(user)

        response = client.post("/forms/Football/submit")

        assert response.json()["data"]["status"] == "submitted"
        assert dispatcher.trigger_types == [TriggerType.FORM_SUBMITTED]
        assert dispatcher.triggers[0].record_id == form.id

    def test_submit_missing_form(self, db, factories, client, login_as):
        login_as(factories.user(db))

        assert client.post("/forms/Chess/submit").status_code == 404

    def test_complete_registration(self, db, factories, client, login_as, dispatcher):
        user = factories.user(db)
        login_as(user)

        response = client.post("/forms/complete-registration")

        assert response.status_code == 200
        db.expire_all()
        assert db.get(UserDB, user.id).registration_done is True
        assert dispatcher.trigger_types == [TriggerType.USER_UPDATED]


# =============================================================================
# INTERNAL SYNC
# =============================================================================

class TestInternalSync:

    def test_wrong_key_rejected(self, client):
        response = client.post("/internal/sync/due-payments", headers={"X-Internal-Key": "nope"})

        assert response.status_code == 403

    def test_missing_key_rejected(self, client):
        assert client.post("/internal/sync/due-payments").status_code == 422

    def test_full_refresh_runs_inline(self, client, dispatcher):
        response = client.post("/internal/sync/due-payments", headers=INTERNAL)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["count"] == 0
        assert dispatcher.trigger_types == [TriggerType.FULL_REFRESH]

    def test_event_accepted(self, client, dispatcher):
        response = client.post("/internal/sync/event", headers=INTERNAL, json={
            "type": "user_updated", "user_id": "u-1", "previous_email": "old@uni.test",
        })

        assert response.status_code == 202
        assert dispatcher.trigger_types == [TriggerType.USER_UPDATED]
        assert dispatcher.triggers[0].previous_email == "old@uni.test"

    def test_unknown_event_type(self, client):
        response = client.post("/internal/sync/event", headers=INTERNAL, json={"type": "nonsense"})

        assert response.status_code == 422

    def test_outcomes_newest_first(self, client, dispatcher):
        client.post("/internal/sync/due-payments", headers=INTERNAL)
        client.post("/internal/sync/due-payments", headers=INTERNAL)

        response = client.get("/internal/sync/outcomes?limit=1", headers=INTERNAL)

        body = response.json()
        assert body["count"] == 1
        assert body["outcomes"][0]["started_at"] == dispatcher.outcomes[-1].started_at.isoformat()


class TestHealth:

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy", "version": "1.0.0"}
