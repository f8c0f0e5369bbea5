import pytest

from transactions.installments import InstallmentDetector, find_marker
from transactions.models import InstallmentInfo


def test_same_purchase_shares_group():
    detector = InstallmentDetector()
    third = detector.detect("NETFLIX CUOTA 3/12")
    first = detector.detect("Netflix Cuota 1/12")
    assert (third.number, third.total) == (3, 12)
    assert (first.number, first.total) == (1, 12)
    assert third.group_id == first.group_id
    assert detector.group_count == 1


def test_different_total_is_a_different_purchase():
    detector = InstallmentDetector()
    a = detector.detect("FRAVEGA CUOTA 2/6")
    b = detector.detect("FRAVEGA CUOTA 2/12")
    assert a.group_id != b.group_id


@pytest.mark.parametrize(
    "description,expected",
    [
        ("Compra Cta 2/6", (2, 6)),
        ("PAGO 1 DE 3 MUEBLERIA", (1, 3)),
        ("Installment 4 of 10", (4, 10)),
        ("TIENDA 3 de 6", (3, 6)),
        ("LIBRERIA 2/3", (2, 3)),
        ("LIBRERIA C.02/03", (2, 3)),
        ("CUOTA 05/12 ELECTRO", (5, 12)),
    ],
)
def test_marker_forms(description, expected):
    found = find_marker(description)
    assert found is not None
    assert found[:2] == expected


@pytest.mark.parametrize(
    "description",
    [
        "COMPRA 15/01/2024",
        "SUPERMERCADO 2024-01-15",
        "CUOTA 5/3",
        "CUOTA 1/1",
        "PEDIDO 12.5/10",
        "COMPRA POS 05/12 SHELL",
        "TRANSFERENCIA 10/12",
        None,
    ],
)
def test_not_an_installment(description):
    assert find_marker(description) is None


def test_day_month_token_does_not_open_a_plan():
    detector = InstallmentDetector()
    assert detector.detect("COMPRA POS 05/12 SHELL") is None
    assert detector.group_count == 0


def test_hint_groups_with_detected_rows():
    detector = InstallmentDetector()
    hinted = detector.from_hint("NETFLIX CUOTA 2/12", 2, 12)
    detected = detector.detect("netflix cuota 5/12")
    assert hinted.group_id == detected.group_id


def test_invalid_hint_is_ignored():
    assert InstallmentDetector().from_hint("anything", 4, 3) is None


def test_installment_info_validates_range():
    detector = InstallmentDetector()
    with pytest.raises(ValueError):
        InstallmentInfo(number=0, total=3, group_id=detector.group_for("x", 3))
