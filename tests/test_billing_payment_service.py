from decimal import Decimal

import pytest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.crud import crud_payments
from app.models.billing import IpdBilling, PatientPayment
from app.schemas.billing_payments import PaymentIn


def cash(amount, **kw):
    return {"amount": amount, "payment_method": "cash", **kw}


def payment_count(db):
    return db.query(PatientPayment).count()


@pytest.fixture(params=["opd", "ipd"])
def bill_1000(request):
    factory = request.getfixturevalue(f"make_{request.param}_bill")
    return request.param, factory("1000.00")


def advance_of(bill):
    return bill.advance_paid if isinstance(bill, IpdBilling) else bill.advance_applied


# ---------------------------------------------------------------------
# scenarios
# ---------------------------------------------------------------------
def test_scenario_a_full_payment(processor, bill_1000):
    bill_type, bill = bill_1000
    res = processor.process_bill_payment(bill_type, bill.id, cash("1000"))

    assert res.success, res.error
    assert res.data["billing_updated"] is True
    assert res.data["payment"]["payment_type"] == "full"
    assert bill.due_amount == Decimal("0.00")
    assert bill.paid_amount == Decimal("1000.00")
    assert bill.payment_status == "paid"


def test_scenario_b_partial_then_rest(processor, bill_1000):
    bill_type, bill = bill_1000

    res = processor.process_bill_payment(bill_type, bill.id, cash("400"))
    assert res.success
    assert res.data["payment"]["payment_type"] == "partial"
    assert bill.due_amount == Decimal("600.00")
    assert bill.payment_status == "partial"

    res = processor.process_bill_payment(bill_type, bill.id, cash("600"))
    assert res.success
    assert res.data["payment"]["payment_type"] == "full"
    assert bill.due_amount == Decimal("0.00")
    assert bill.payment_status == "paid"


def test_scenario_c_overpayment_rejected_without_record(processor, db_session,
                                                        bill_1000, events):
    bill_type, bill = bill_1000
    res = processor.process_bill_payment(bill_type, bill.id, cash("1200"))

    assert not res.success
    assert res.error_code == "amount_exceeds_due"
    assert "exceeds due amount (1,000.00)" in res.error.msg
    assert payment_count(db_session) == 0
    assert bill.payment_status == "pending"
    [ev] = events.of("operation_rejected")
    assert ev.fields["code"] == "amount_exceeds_due"


def test_scenario_d_advance_applied_to_bill(processor, patient, bill_1000):
    bill_type, bill = bill_1000

    res = processor.process_advance_payment(patient.id, cash("500"))
    assert res.success
    assert res.data["advance_balance"] == Decimal("500.00")

    res = processor.apply_advance_balance(bill_type, bill.id, "300")
    assert res.success, res.error
    assert res.data["advance_balance"] == Decimal("200.00")
    assert advance_of(bill) == Decimal("300.00")
    assert bill.wallet_applied == Decimal("300.00")
    assert bill.due_amount == Decimal("700.00")
    assert bill.payment_status == "partial"

    summary = processor.get_advance_summary(patient.id).data
    assert summary["current_balance"] == Decimal("200.00")
    assert summary["total_advance_used"] == Decimal("300.00")


def test_scenario_e_refund_reopens_paid_bill(processor, bill_1000, events):
    bill_type, bill = bill_1000
    processor.process_bill_payment(bill_type, bill.id, cash("600"))
    second = processor.process_bill_payment(bill_type, bill.id, cash("400"))
    assert bill.payment_status == "paid"

    res = processor.refund_payment(second.data["payment_id"], reason="dup")
    assert res.success, res.error
    assert res.data["payment_status"] == "partial"
    assert bill.due_amount == Decimal("400.00")
    assert bill.payment_status == "partial"
    assert not events.of("illegal_status_transition")


# ---------------------------------------------------------------------
# process_payment
# ---------------------------------------------------------------------
def test_payment_without_bill_goes_to_wallet(processor, db_session, patient):
    res = processor.process_payment(cash("500", patient_id=patient.id))
    assert res.success
    assert res.data["billing_updated"] is False
    assert res.data["advance_balance"] == Decimal("500.00")

    row = db_session.get(PatientPayment, res.data["payment_id"])
    assert row.bill_type == "advance"
    assert row.payment_type == "advance"
    assert row.bill_id is None
    assert row.payment_number.startswith("PAY-")
    assert row.receipt_number.startswith("RCPT-")


def test_advance_is_credited_once(processor, patient):
    processor.process_payment(
        cash("500", patient_id=patient.id, bill_type="advance",
             payment_type="advance"))
    summary = processor.get_advance_summary(patient.id).data
    assert summary["current_balance"] == Decimal("500.00")
    assert summary["total_advance_paid"] == Decimal("500.00")


def test_explicit_payment_type_is_kept(processor, patient, make_opd_bill):
    bill = make_opd_bill("1000.00")
    res = processor.process_payment(
        cash("1000", patient_id=patient.id, bill_type="opd", bill_id=bill.id,
             payment_type="partial"))
    assert res.success
    assert res.data["payment"]["payment_type"] == "partial"
    assert bill.payment_status == "paid"


def test_payment_type_is_derived_when_absent(processor, patient,
                                             make_opd_bill):
    bill = make_opd_bill("1000.00")
    res = processor.process_payment(
        cash("1000", patient_id=patient.id, bill_type="opd", bill_id=bill.id))
    assert res.data["payment"]["payment_type"] == "full"


@pytest.mark.parametrize("ptype", ["advance", "refund"])
def test_bill_payment_cannot_claim_advance_or_refund_type(
        processor, patient, make_opd_bill, ptype):
    bill = make_opd_bill()
    res = processor.process_payment(
        cash("100", patient_id=patient.id, bill_type="opd", bill_id=bill.id,
             payment_type=ptype))
    assert res.error_code == "invalid_payment_type"


def test_bill_id_without_type_is_rejected(processor, patient):
    res = processor.process_payment(cash("100", patient_id=patient.id,
                                         bill_id=3))
    assert res.error_code == "validation_error"


def test_validation_runs_before_resolution(processor, db_session):
    res = processor.process_payment(cash("100", bill_type="opd", bill_id=999))
    assert res.error_code == "missing_patient"
    assert payment_count(db_session) == 0


@pytest.mark.parametrize("bill_type", ["emergency", "lab", "radiology"])
def test_unsupported_bill_types_fail_hard(processor, db_session, patient,
                                          bill_type):
    res = processor.process_payment(
        cash("100", patient_id=patient.id, bill_type=bill_type, bill_id=1))
    assert not res.success
    assert res.error_code == "bill_not_found"
    assert payment_count(db_session) == 0


def test_typed_bill_without_id_is_not_found(processor, patient):
    res = processor.process_payment(cash("100", patient_id=patient.id,
                                         bill_type="opd"))
    assert res.error_code == "bill_not_found"


def test_unparseable_payload_is_a_validation_error(processor, patient):
    res = processor.process_payment({"patient_id": patient.id,
                                     "amount": "a lot",
                                     "payment_method": "cash"})
    assert res.error_code == "validation_error"


def test_accepts_payment_model(processor, patient):
    req = PaymentIn(patient_id=patient.id, amount=Decimal("50"),
                    payment_method="card", transaction_id="TX-9")
    res = processor.process_payment(req, actor_id=77)
    assert res.success
    assert res.data["payment"]["processed_by"] == 77
    assert res.data["payment"]["transaction_id"] == "TX-9"


# ---------------------------------------------------------------------
# process_bill_payment
# ---------------------------------------------------------------------
def test_bill_payment_defaults_patient_from_bill(processor, patient,
                                                 make_opd_bill):
    bill = make_opd_bill()
    res = processor.process_bill_payment("opd", bill.id, cash("100"))
    assert res.data["payment"]["patient_id"] == patient.id


def test_patient_mismatch(processor, make_patient, make_opd_bill, db_session):
    other = make_patient()
    bill = make_opd_bill()
    res = processor.process_bill_payment("opd", bill.id,
                                         cash("100", patient_id=other.id))
    assert res.error_code == "patient_mismatch"
    assert payment_count(db_session) == 0


def test_invalid_bill_type(processor):
    res = processor.process_bill_payment("pharmacy", 1, cash("100"))
    assert res.error_code == "invalid_bill_type"


def test_missing_bill(processor):
    res = processor.process_bill_payment("opd", 999, cash("100"))
    assert res.error_code == "bill_not_found"


def test_stored_due_adjustment_honoured_before_first_payment(
        processor, make_opd_bill):
    bill = make_opd_bill("1000.00", due_amount=Decimal("800.00"))
    res = processor.process_bill_payment("opd", bill.id, cash("900"))
    assert res.error_code == "amount_exceeds_due"

    res = processor.process_bill_payment("opd", bill.id, cash("800"))
    assert res.success
    assert res.data["due_before"] == Decimal("800.00")


def test_ipd_payment_by_admission_id_synthesizes_bill(processor, db_session,
                                                      events, make_admission,
                                                      monkeypatch):
    from app.core.config import settings
    monkeypatch.setattr(settings, "BILLING_IPD_TAX_PERCENT", 0.0)
    adm = make_admission(daily_rate="1000.00", stay_days=2,
                         advance_payment=Decimal("500.00"))

    res = processor.process_bill_payment("ipd", adm.id, cash("500"),
                                         actor_id=3)
    assert res.success, res.error
    assert events.of("ipd_bill_synthesized")

    bill = db_session.query(IpdBilling).one()
    assert bill.total_amount == Decimal("2000.00")
    assert bill.advance_paid == Decimal("500.00")
    assert bill.due_amount == Decimal("1000.00")
    assert bill.payment_status == "partial"
    assert bill.created_by == 3


def test_failed_payment_leaves_no_synthesized_bill(processor, db_session,
                                                   make_admission):
    adm = make_admission()
    res = processor.process_bill_payment("ipd", adm.id,
                                         cash("100", payment_method="card"))
    assert res.error_code == "missing_transaction_id"
    assert db_session.query(IpdBilling).count() == 0


def test_legacy_admission_ledger_keeps_receiving_payments(
        processor, db_session, make_admission, make_ipd_bill, patient):
    adm = make_admission(id=7)
    bill = make_ipd_bill("1000.00", admission=adm, id=3)
    crud_payments.insert_payment(db_session,
                                 patient_id=patient.id,
                                 bill_type="ipd",
                                 bill_id=7,
                                 payment_type="partial",
                                 payment_method="cash",
                                 amount=Decimal("300.00"),
                                 payment_status="completed")
    db_session.commit()

    res = processor.process_bill_payment("ipd", 3, cash("800"))
    assert res.error_code == "amount_exceeds_due"

    res = processor.process_bill_payment("ipd", 3, cash("700"))
    assert res.success
    assert res.data["payment"]["bill_id"] == 7
    assert bill.payment_status == "paid"


# ---------------------------------------------------------------------
# advance balance
# ---------------------------------------------------------------------
def test_apply_more_than_wallet(processor, patient, make_opd_bill):
    bill = make_opd_bill()
    processor.process_advance_payment(patient.id, cash("100"))
    res = processor.apply_advance_balance("opd", bill.id, "300")
    assert res.error_code == "insufficient_advance_balance"
    assert bill.advance_applied == Decimal("0.00")
    assert processor.get_advance_summary(patient.id).data[
        "current_balance"] == Decimal("100.00")


def test_apply_more_than_due(processor, patient, make_opd_bill):
    bill = make_opd_bill("200.00")
    processor.process_advance_payment(patient.id, cash("500"))
    res = processor.apply_advance_balance("opd", bill.id, "300")
    assert res.error_code == "amount_exceeds_due"


@pytest.mark.parametrize("amount", [None, 0, "-5"])
def test_apply_requires_positive_amount(processor, make_opd_bill, amount):
    bill = make_opd_bill()
    assert processor.apply_advance_balance(
        "opd", bill.id, amount).error_code == "invalid_amount"


def test_release_returns_wallet_money(processor, patient, bill_1000):
    bill_type, bill = bill_1000
    processor.process_advance_payment(patient.id, cash("500"))
    after_add = processor.get_advance_summary(patient.id).data

    processor.apply_advance_balance(bill_type, bill.id, "300")
    res = processor.release_advance_balance(bill_type, bill.id, "100")
    assert res.success, res.error
    assert res.data["advance_balance"] == Decimal("300.00")
    assert advance_of(bill) == Decimal("200.00")
    assert bill.due_amount == Decimal("800.00")

    processor.release_advance_balance(bill_type, bill.id, "200")
    assert processor.get_advance_summary(patient.id).data == after_add


def test_release_limited_to_wallet_money(processor, make_ipd_bill):
    # advance taken at the admission desk never came from the wallet
    bill = make_ipd_bill("1000.00", advance_paid=Decimal("400.00"))
    res = processor.release_advance_balance("ipd", bill.id, "100")
    assert res.error_code == "insufficient_advance_balance"
    assert bill.advance_paid == Decimal("400.00")


# ---------------------------------------------------------------------
# refunds
# ---------------------------------------------------------------------
def test_refund_restores_exactly_the_refunded_amount(processor, db_session,
                                                     bill_1000):
    bill_type, bill = bill_1000
    pay = processor.process_bill_payment(bill_type, bill.id, cash("250"))
    assert bill.due_amount == Decimal("750.00")

    res = processor.refund_payment(pay.data["payment_id"], actor_id=9)
    assert res.success
    assert bill.due_amount == Decimal("1000.00")
    assert bill.payment_status == "pending"

    refund = db_session.get(PatientPayment, res.data["refund"]["id"])
    assert refund.payment_type == "refund"
    assert refund.refund_of_id == pay.data["payment_id"]
    assert refund.amount == Decimal("250.00")
    assert refund.payment_number.startswith("RFD-")
    assert refund.receipt_number is None
    assert refund.processed_by == 9

    original = db_session.get(PatientPayment, pay.data["payment_id"])
    assert original.payment_status == "refunded"
    assert original.refunded_amount == Decimal("250.00")


def test_partial_refund_keeps_remainder_as_paid(processor, make_opd_bill):
    bill = make_opd_bill("1000.00")
    pay = processor.process_bill_payment("opd", bill.id, cash("400"))

    res = processor.refund_payment(pay.data["payment_id"], "100", "overcharge")
    assert res.success
    assert bill.paid_amount == Decimal("300.00")
    assert bill.due_amount == Decimal("700.00")
    assert res.data["refund"]["notes"] == "Refund: overcharge"


def test_refund_cannot_repeat(processor, make_opd_bill):
    bill = make_opd_bill()
    pay = processor.process_bill_payment("opd", bill.id, cash("400"))
    processor.refund_payment(pay.data["payment_id"], "100")
    res = processor.refund_payment(pay.data["payment_id"], "100")
    assert res.error_code == "already_refunded"


def test_refund_of_a_refund(processor, make_opd_bill):
    bill = make_opd_bill()
    pay = processor.process_bill_payment("opd", bill.id, cash("400"))
    refund = processor.refund_payment(pay.data["payment_id"])
    res = processor.refund_payment(refund.data["refund"]["id"])
    assert res.error_code == "invalid_refund_target"


def test_refund_limits(processor, make_opd_bill):
    bill = make_opd_bill()
    pay = processor.process_bill_payment("opd", bill.id, cash("400"))
    pid = pay.data["payment_id"]
    assert processor.refund_payment(pid, "401").error_code == \
        "refund_exceeds_payment"
    assert processor.refund_payment(pid, "0").error_code == "invalid_amount"
    assert processor.refund_payment(12345).error_code == "payment_not_found"


def test_refund_of_advance_takes_it_out_of_wallet(processor, patient):
    pay = processor.process_advance_payment(patient.id, cash("500"))
    res = processor.refund_payment(pay.data["payment_id"])
    assert res.success
    assert res.data["advance_balance"] == Decimal("0.00")
    assert res.data["billing_updated"] is False
    summary = processor.get_advance_summary(patient.id).data
    assert summary["total_advance_paid"] == Decimal("0.00")


def test_refund_of_spent_advance_is_rejected(processor, db_session, patient,
                                             make_opd_bill):
    bill = make_opd_bill()
    pay = processor.process_advance_payment(patient.id, cash("500"))
    processor.apply_advance_balance("opd", bill.id, "400")

    res = processor.refund_payment(pay.data["payment_id"])
    assert res.error_code == "insufficient_advance_balance"
    original = db_session.get(PatientPayment, pay.data["payment_id"])
    assert original.payment_status == "completed"
    assert processor.get_advance_summary(patient.id).data[
        "current_balance"] == Decimal("100.00")


# ---------------------------------------------------------------------
# status recompute and failure handling
# ---------------------------------------------------------------------
def test_update_billing_status_is_idempotent(processor, make_opd_bill):
    bill = make_opd_bill()
    processor.process_bill_payment("opd", bill.id, cash("300"))

    first = processor.update_billing_status("opd", bill.id)
    second = processor.update_billing_status("opd", bill.id)
    assert first.success and second.success
    assert first.data["due_amount"] == second.data["due_amount"] == \
        Decimal("700.00")
    assert first.data["payment_status"] == second.data["payment_status"] == \
        "partial"


def test_update_billing_status_for_advance_is_a_noop(processor):
    res = processor.update_billing_status("advance", None)
    assert res.success
    assert res.data["billing_updated"] is False


def test_recompute_failure_keeps_payment(processor, db_session, events,
                                         make_opd_bill, monkeypatch):
    bill = make_opd_bill()

    def boom(*a, **kw):
        raise SQLAlchemyError("status write failed")

    monkeypatch.setattr(processor.status, "update", boom)
    res = processor.process_bill_payment("opd", bill.id, cash("400"))

    assert res.success
    assert res.data["billing_updated"] is False
    assert payment_count(db_session) == 1
    assert bill.payment_status == "pending"
    assert events.of("status_recompute_failed")

    # the next recompute heals the cached fields
    monkeypatch.undo()
    processor.update_billing_status("opd", bill.id)
    assert bill.due_amount == Decimal("600.00")


def test_unexpected_error_becomes_processing_error(processor, events,
                                                   monkeypatch):

    def explode(*a, **kw):
        raise RuntimeError("kaboom")

    monkeypatch.setattr(processor.resolver, "resolve", explode)
    res = processor.process_bill_payment("opd", 1, cash("10"))
    assert res.error_code == "processing_error"
    assert res.error.msg == "Payment processing error"
    assert events.of("processing_failed")


def test_storage_failure_becomes_persistence_error(processor, db_session,
                                                   make_opd_bill, monkeypatch):
    bill = make_opd_bill()

    def fail(*a, **kw):
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(crud_payments, "insert_payment", fail)
    res = processor.process_bill_payment("opd", bill.id, cash("10"))
    assert res.error_code == "persistence_error"


def test_concurrent_bill_change_is_detected(processor, db_session,
                                            make_opd_bill):
    bill = make_opd_bill()
    assert bill.total_amount == Decimal("1000.00")
    # another writer bumps the row behind this session's back
    db_session.execute(
        text("UPDATE opd_bills SET version = version + 1 WHERE id = :id"),
        {"id": bill.id})

    res = processor.update_billing_status("opd", bill.id)
    assert res.error_code == "persistence_error"


def _bill_changes_after_due_read(processor, monkeypatch):
    read_due = processor._due

    def _due(resolved):
        due = read_due(resolved)
        # another writer books against the bill between read and write
        table = resolved.bill.__tablename__
        processor.db.execute(
            text(f"UPDATE {table} SET version = version + 1 WHERE id = :id"),
            {"id": resolved.bill.id})
        return due

    monkeypatch.setattr(processor, "_due", _due)


def test_payment_on_stale_due_is_rejected(processor, db_session, bill_1000,
                                          monkeypatch):
    bill_type, bill = bill_1000
    _bill_changes_after_due_read(processor, monkeypatch)

    res = processor.process_bill_payment(bill_type, bill.id, cash("1000"))
    assert res.error_code == "persistence_error"
    assert payment_count(db_session) == 0

    monkeypatch.undo()
    assert processor.process_bill_payment(bill_type, bill.id,
                                          cash("1000")).success
    assert processor.process_bill_payment(
        bill_type, bill.id, cash("1000")).error_code == "amount_exceeds_due"
    assert payment_count(db_session) == 1


def test_advance_apply_on_stale_due_is_rejected(processor, patient,
                                                make_opd_bill, monkeypatch):
    bill = make_opd_bill()
    processor.process_advance_payment(patient.id, cash("500"))
    _bill_changes_after_due_read(processor, monkeypatch)

    res = processor.apply_advance_balance("opd", bill.id, "300")
    assert res.error_code == "persistence_error"
    assert processor.advances.get_balance(patient.id) == Decimal("500.00")
    assert bill.advance_applied == Decimal("0.00")


def test_refund_racing_on_the_same_payment(processor, db_session,
                                           make_opd_bill):
    bill = make_opd_bill()
    pid = processor.process_bill_payment("opd", bill.id,
                                         cash("400")).data["payment_id"]
    original = db_session.get(PatientPayment, pid)
    assert original.payment_status == "completed"
    # the other refund already flipped the row under this session
    db_session.execute(
        text("UPDATE patient_payments SET payment_status = 'refunded', "
             "refunded_amount = 400 WHERE id = :id"), {"id": pid})

    res = processor.refund_payment(pid, "100")
    assert res.error_code == "already_refunded"
    refunds = db_session.query(PatientPayment).filter_by(refund_of_id=pid)
    assert refunds.count() == 0


def test_sub_cent_payment_is_an_invalid_amount(processor, make_opd_bill):
    bill = make_opd_bill()
    res = processor.process_bill_payment("opd", bill.id, cash("0.001"))
    assert res.error_code == "invalid_amount"


# ---------------------------------------------------------------------
# reads
# ---------------------------------------------------------------------
def test_bill_summary(processor, make_opd_bill):
    bill = make_opd_bill("1000.00", insurance_covered=Decimal("100.00"))
    processor.process_bill_payment("opd", bill.id, cash("400"))

    res = processor.get_bill_summary("opd", bill.id)
    assert res.success
    assert res.data["due_amount"] == Decimal("500.00")
    assert res.data["total_paid"] == Decimal("400.00")
    assert res.data["payment_status"] == "partial"
    assert len(res.data["payments"]) == 1


def test_list_patient_payments(processor, patient, make_opd_bill):
    bill = make_opd_bill()
    processor.process_bill_payment("opd", bill.id, cash("100"))
    processor.process_advance_payment(patient.id, cash("50"))

    everything = processor.list_patient_payments(patient.id).data["payments"]
    assert len(everything) == 2
    only_opd = processor.list_patient_payments(patient.id, "opd").data
    assert [p["bill_type"] for p in only_opd["payments"]] == ["opd"]


def test_single_payment_lookups(processor, make_opd_bill):
    bill = make_opd_bill()
    pay = processor.process_bill_payment("opd", bill.id, cash("300")).data

    by_id = processor.get_payment(pay["payment_id"])
    assert by_id.data["payment"]["amount"] == Decimal("300.00")

    receipt = pay["payment"]["receipt_number"]
    by_receipt = processor.get_payment_by_receipt(f" {receipt} ")
    assert by_receipt.data["payment"]["id"] == pay["payment_id"]


def test_single_payment_lookups_not_found(processor):
    assert processor.get_payment(404).error_code == "payment_not_found"
    for receipt in ("RCPT-0000-00404", "", None):
        res = processor.get_payment_by_receipt(receipt)
        assert res.error_code == "payment_not_found"


# ---------------------------------------------------------------------
# invariants over a mixed sequence
# ---------------------------------------------------------------------
def test_due_and_ledger_invariants_hold(processor, db_session, patient,
                                        make_opd_bill):
    bill = make_opd_bill("1000.00")
    processor.process_advance_payment(patient.id, cash("300"))

    steps = [
        lambda: processor.process_bill_payment("opd", bill.id, cash("450")),
        lambda: processor.process_bill_payment("opd", bill.id, cash("700")),
        lambda: processor.apply_advance_balance("opd", bill.id, "300"),
        lambda: processor.process_bill_payment("opd", bill.id, cash("250")),
        lambda: processor.process_bill_payment("opd", bill.id, cash("1")),
        lambda: processor.refund_payment(
            crud_payments.list_by_bill(db_session, "opd", bill.id)[0].id,
            "200"),
        lambda: processor.release_advance_balance("opd", bill.id, "300"),
        lambda: processor.process_bill_payment("opd", bill.id, cash("500")),
    ]
    for step in steps:
        step()
        paid = crud_payments.sum_non_refunded(db_session, "opd", bill.id)
        assert bill.due_amount is None or bill.due_amount >= 0
        assert paid <= bill.total_amount
        assert paid + bill.advance_applied <= bill.total_amount
