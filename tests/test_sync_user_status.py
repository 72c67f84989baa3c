"""
Tests for the admin Stripe sync endpoints.
"""

import json
from unittest.mock import patch

import pytest
import stripe

from conftest import auth_headers, seed_user


@pytest.fixture
def env(billing_env, stripe_configured):
    seed_user(billing_env, "admin_1", "admin@example.com", is_admin=True)
    return billing_env


def _request(body=None, user_id="admin_1"):
    return {
        "httpMethod": "POST",
        "headers": auth_headers(user_id),
        "body": json.dumps(body or {}),
        "requestContext": {"requestId": "test-request-id"},
    }


def _user(env, user_id):
    return env["dynamodb"].Table("steadycoach-users").get_item(Key={"pk": user_id})["Item"]


class TestSyncSingleUser:
    """Tests for handler()."""

    def test_syncs_user_by_email(self, env):
        from admin.sync_user_status import handler

        seed_user(env, "user_1", "one@example.com")
        with patch("stripe.Customer.list", return_value={"data": [{"id": "cus_1"}]}) as list_customers, \
                patch("stripe.Subscription.list",
                      return_value={"data": [{"id": "sub_1", "status": "active"}]}):
            response = handler(_request({"email": "One@Example.com"}), {})

        assert response["statusCode"] == 200
        list_customers.assert_called_once_with(email="One@Example.com", limit=1)
        summary = json.loads(response["body"])["user"]
        assert summary["old_status"] == "free"
        assert summary["new_status"] == "premium"
        assert summary["stripe"]["subscription_id"] == "sub_1"
        record = _user(env, "user_1")
        assert record["status"] == "premium"
        assert record["approval_type"] == "stripe"
        assert record["stripe_customer_id"] == "cus_1"

    def test_email_required(self, env):
        from admin.sync_user_status import handler

        assert handler(_request({}), {})["statusCode"] == 400

    def test_unknown_user(self, env):
        from admin.sync_user_status import handler

        response = handler(_request({"email": "ghost@example.com"}), {})

        assert response["statusCode"] == 404
        assert json.loads(response["body"])["error"]["code"] == "user_not_found"

    def test_no_stripe_customer(self, env):
        from admin.sync_user_status import handler

        seed_user(env, "user_1", "one@example.com")
        with patch("stripe.Customer.list", return_value={"data": []}):
            response = handler(_request({"email": "one@example.com"}), {})

        assert response["statusCode"] == 404
        assert json.loads(response["body"])["error"]["code"] == "no_stripe_customer"

    def test_stripe_outage_is_502(self, env):
        from admin.sync_user_status import handler

        seed_user(env, "user_1", "one@example.com")
        with patch("stripe.Customer.list", side_effect=stripe.APIConnectionError("down")):
            response = handler(_request({"email": "one@example.com"}), {})

        assert response["statusCode"] == 502

    def test_requires_admin(self, env):
        from admin.sync_user_status import handler

        seed_user(env, "user_1", "one@example.com")

        assert handler(_request({"email": "one@example.com"}, user_id="user_1"), {})["statusCode"] == 403


class TestBatchSync:
    """Tests for batch_handler()."""

    def test_only_drifted_users_are_reported(self, env):
        from admin.sync_user_status import batch_handler

        seed_user(env, "user_1", "one@example.com", status="premium", payment_status="active",
                  stripe_customer_id="cus_1", subscription={"tier": "premium", "stripe_subscription_id": "sub_1"})
        seed_user(env, "user_2", "two@example.com", status="free", stripe_customer_id="cus_2")

        def subscriptions_for(customer, status, limit):
            return {"data": [{"id": f"sub_{customer[-1]}", "status": "active"}]}

        with patch("stripe.Subscription.list", side_effect=subscriptions_for):
            response = batch_handler(_request(), {})

        assert response["statusCode"] == 200
        body = json.loads(response["body"])
        assert body["total_processed"] == 2
        assert body["updated"] == 1
        assert [r["user_id"] for r in body["results"]] == ["user_2"]
        assert _user(env, "user_2")["status"] == "premium"

    def test_errors_are_collected(self, env):
        from admin.sync_user_status import batch_handler

        seed_user(env, "user_1", "one@example.com", stripe_customer_id="cus_1")
        with patch("stripe.Subscription.list", side_effect=stripe.APIConnectionError("down")):
            response = batch_handler(_request(), {})

        body = json.loads(response["body"])
        assert body["errors"] == [{"user_id": "user_1", "error": "down"}]
        assert body["updated"] == 0
