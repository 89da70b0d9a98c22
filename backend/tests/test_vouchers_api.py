"""
Tests for the REST voucher endpoints.

Covers:
  - Listing with status and date filters, house number resolved through the link rows
  - Detail with a signed receipt link, 404 for unknown ids
  - OCR and web upload: extracted draft, missing fields, rejected files
  - Web confirm: validation errors, duplicates, default transaction time
  - Feature flag and upload rate limit
"""

import unittest

from sqlalchemy import update

from app.models.voucher import Voucher
from app.schemas.voucher import VoucherDraft
from app.services.voucher_commit import Submitter, commit_voucher
from app.services.voucher_extraction import ExtractionError
from tests.conftest import WebhookTestCase, settings_env

PHONE = "5215512345678"
COMPLETE_DRAFT = VoucherDraft(
    amount="1500.15",
    payment_date="2025-01-10",
    transaction_time="10:30:00",
    reference="ABC123",
    house_number=15,
)


class VoucherApiTestCase(WebhookTestCase):
    def seed(self, *, amount="500.15", payment_date="2025-01-10", house_number=15, handle="2025/01/a.jpg"):
        draft = VoucherDraft(
            amount=amount,
            payment_date=payment_date,
            transaction_time="10:30:00",
            reference="REF123",
            house_number=house_number,
        )
        db = self.SessionLocal()
        try:
            return commit_voucher(db, draft=draft, artifact_handle=handle, submitter=Submitter(phone=PHONE))
        finally:
            db.close()

    def upload(self, path="/api/v1/vouchers/frontend/upload", *, content=b"\xff\xd8jpeg", mime="image/jpeg"):
        return self.client.post(path, files={"file": ("recibo.jpg", content, mime)})

    def confirm_body(self, **overrides):
        body = {
            "artifact_handle": "2025/01/recibo.jpg",
            "amount": "1500.15",
            "payment_date": "2025-01-10",
            "transaction_time": "10:30:00",
            "house_number": 15,
            "reference": "ABC123",
            "phone": "5512345678",
        }
        body.update(overrides)
        return body


class ListVouchersTests(VoucherApiTestCase):
    def test_empty(self):
        resp = self.client.get("/api/v1/vouchers")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), [])

    def test_lists_newest_first_with_house(self):
        older = self.seed(payment_date="2025-01-05", house_number=3, amount="100.03")
        newer = self.seed(payment_date="2025-01-20", house_number=7, amount="100.07")

        body = self.client.get("/api/v1/vouchers").json()
        self.assertEqual([item["id"] for item in body], [newer.voucher_id, older.voucher_id])
        self.assertEqual(body[0]["number_house"], 7)
        self.assertEqual(body[0]["confirmation_code"], newer.confirmation_code)
        self.assertEqual(body[0]["amount"], "100.07")
        self.assertFalse(body[0]["confirmation_status"])

    def test_filter_by_confirmation_status(self):
        pending = self.seed(amount="100.03", house_number=3)
        confirmed = self.seed(amount="100.07", house_number=7)
        db = self.SessionLocal()
        db.execute(update(Voucher).where(Voucher.id == confirmed.voucher_id).values(confirmation_status=True))
        db.commit()
        db.close()

        ids = [item["id"] for item in self.client.get("/api/v1/vouchers?confirmation_status=true").json()]
        self.assertEqual(ids, [confirmed.voucher_id])
        ids = [item["id"] for item in self.client.get("/api/v1/vouchers?confirmation_status=false").json()]
        self.assertEqual(ids, [pending.voucher_id])

    def test_filter_by_date_range_is_inclusive(self):
        self.seed(payment_date="2025-01-05", amount="100.03", house_number=3)
        inside = self.seed(payment_date="2025-01-10", amount="100.07", house_number=7)
        self.seed(payment_date="2025-01-11", amount="100.09", house_number=9)

        body = self.client.get("/api/v1/vouchers?start_date=2025-01-06&end_date=2025-01-10").json()
        self.assertEqual([item["id"] for item in body], [inside.voucher_id])

    def test_inverted_date_range(self):
        resp = self.client.get("/api/v1/vouchers?start_date=2025-02-01&end_date=2025-01-01")
        self.assertEqual(resp.status_code, 400)

    def test_disabled(self):
        with settings_env(ENABLE_VOUCHER_API="false"):
            resp = self.client.get("/api/v1/vouchers")
        self.assertEqual(resp.status_code, 404)


class GetVoucherTests(VoucherApiTestCase):
    def test_detail_with_signed_link(self):
        seeded = self.seed(handle="2025/01/b.jpg")
        resp = self.client.get(f"/api/v1/vouchers/{seeded.voucher_id}")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["number_house"], 15)
        self.assertEqual(body["url"], "2025/01/b.jpg")
        self.assertEqual(body["view_url"], "https://storage.test/signed/2025/01/b.jpg?ttl=3600")

    def test_signing_failure_still_returns_voucher(self):
        seeded = self.seed()

        def broken(handle, expires_in):
            raise RuntimeError("storage down")

        self.runtime.storage.signed_url = broken
        body = self.client.get(f"/api/v1/vouchers/{seeded.voucher_id}").json()
        self.assertEqual(body["id"], seeded.voucher_id)
        self.assertIsNone(body["view_url"])

    def test_unknown_id(self):
        resp = self.client.get("/api/v1/vouchers/999")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["detail"], "Voucher con ID 999 no encontrado")


class UploadTests(VoucherApiTestCase):
    def test_complete_receipt(self):
        self.extractor.draft = COMPLETE_DRAFT
        resp = self.upload()
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["valid"])
        self.assertEqual(body["missing_fields"], [])
        self.assertEqual(body["draft"]["amount"], "1500.15")
        self.assertEqual(body["draft"]["house_number"], 15)
        self.assertEqual(body["artifact_handle"], "2025/01/recibo.jpg")
        self.assertEqual(body["original_filename"], "recibo.jpg")
        self.assertIn("¿Los datos son correctos?", body["message"])
        self.assertEqual(self.extractor.calls, [("recibo.jpg", "image/jpeg")])

    def test_missing_fields_are_listed(self):
        self.extractor.draft = VoucherDraft(amount="1500.15")
        body = self.upload().json()
        self.assertFalse(body["valid"])
        self.assertEqual(body["missing_fields"], ["fecha_pago", "hora_transaccion", "casa"])
        self.assertEqual(body["suggestions"][0], "Indica el dato: Fecha de pago")

    def test_ocr_service_route(self):
        self.extractor.draft = COMPLETE_DRAFT
        resp = self.upload("/api/v1/vouchers/ocr-service")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["valid"])

    def test_mime_guessed_from_filename(self):
        resp = self.client.post(
            "/api/v1/vouchers/frontend/upload",
            files={"file": ("recibo.pdf", b"%PDF-1.4", "application/octet-stream")},
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.extractor.calls, [("recibo.pdf", "application/pdf")])

    def test_unsupported_type(self):
        resp = self.upload(content=b"hola", mime="text/plain")
        self.assertEqual(resp.status_code, 400)

    def test_empty_file(self):
        resp = self.upload(content=b"")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.extractor.calls, [])

    def test_file_too_large(self):
        with settings_env(VOUCHER_UPLOAD_MAX_BYTES="4"):
            resp = self.upload(content=b"0123456789")
        self.assertEqual(resp.status_code, 413)
        self.assertEqual(self.extractor.calls, [])

    def test_extraction_failure(self):
        self.extractor.error = ExtractionError("invalid_provider_response")
        resp = self.upload()
        self.assertEqual(resp.status_code, 400)

    def test_rate_limited(self):
        with settings_env(RATE_LIMIT_VOUCHER_UPLOAD_IP_PER_MIN="1"):
            self.assertEqual(self.upload().status_code, 200)
            self.assertEqual(self.upload().status_code, 429)


class ConfirmTests(VoucherApiTestCase):
    def test_commits_voucher(self):
        resp = self.client.post("/api/v1/vouchers/frontend/confirm", json=self.confirm_body())
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["voucher"]["confirmation_code"], body["confirmation_code"])
        self.assertEqual(body["voucher"]["number_house"], 15)
        self.assertEqual(body["voucher"]["amount"], "1500.15")
        self.assertEqual(body["voucher"]["url"], "2025/01/recibo.jpg")
        self.assertEqual(body["voucher"]["authorization_number"], "ABC123")

    def test_transaction_time_defaults_to_noon(self):
        body = self.confirm_body()
        del body["transaction_time"]
        resp = self.client.post("/api/v1/vouchers/frontend/confirm", json=body)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["voucher"]["date"], "2025-01-10T12:00:00")

    def test_invalid_fields(self):
        resp = self.client.post(
            "/api/v1/vouchers/frontend/confirm",
            json=self.confirm_body(amount="1e3", house_number=99),
        )
        self.assertEqual(resp.status_code, 400)
        errors = resp.json()["detail"]["errors"]
        self.assertEqual(sorted(errors), ["casa", "monto"])

    def test_invalid_phone(self):
        resp = self.client.post("/api/v1/vouchers/frontend/confirm", json=self.confirm_body(phone="123"))
        self.assertEqual(resp.status_code, 400)
        self.assertIn("phone", resp.json()["detail"]["errors"])

    def test_duplicate_is_conflict(self):
        first = self.client.post("/api/v1/vouchers/frontend/confirm", json=self.confirm_body()).json()
        resp = self.client.post("/api/v1/vouchers/frontend/confirm", json=self.confirm_body())
        self.assertEqual(resp.status_code, 409)
        self.assertIn(first["confirmation_code"], resp.json()["detail"])

        db = self.SessionLocal()
        try:
            self.assertEqual(db.query(Voucher).count(), 1)
        finally:
            db.close()

    def test_same_payment_for_another_house_is_accepted(self):
        self.client.post("/api/v1/vouchers/frontend/confirm", json=self.confirm_body())
        resp = self.client.post("/api/v1/vouchers/frontend/confirm", json=self.confirm_body(house_number=16))
        self.assertEqual(resp.status_code, 200)


if __name__ == "__main__":
    unittest.main()
