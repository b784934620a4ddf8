from provider_trust_engine.scoring.scorer import required_fields_for, score, score_text
from provider_trust_engine.trust.schemas import FieldResult, IdentityExpectation


def _field(key: str, similarity: float, found: bool) -> FieldResult:
    return FieldResult(
        field_key=key, expected_value="x", found=found, similarity=similarity
    )


def test_overall_score_is_mean_similarity():
    result = score(
        {"fullName": _field("fullName", 1.0, True), "date": _field("date", 0.5, False)},
        ["fullName"],
    )

    assert result.overall_score == 75.0
    assert result.success is True


def test_high_average_still_fails_on_missing_required_field():
    fields = {
        "fullName": _field("fullName", 0.99, True),
        "firstName": _field("firstName", 1.0, True),
        "lastName": _field("lastName", 1.0, True),
        "registrationNumber": _field("registrationNumber", 0.6, False),
    }

    result = score(fields, ["fullName", "registrationNumber"])

    assert result.overall_score > 85
    assert result.success is False


def test_required_field_never_scored_counts_as_missing():
    result = score({"fullName": _field("fullName", 1.0, True)}, ["fullName", "date"])

    assert result.success is False


def test_no_fields_scores_zero():
    result = score({}, [])

    assert result.success is False
    assert result.overall_score == 0.0
    assert result.fields == {}


def test_license_requires_registration_number_only_when_declared():
    bare = IdentityExpectation(full_name="Ahmed Benali")
    declared = IdentityExpectation(full_name="Ahmed Benali", registration_number="123")

    assert required_fields_for("license", bare) == ["fullName"]
    assert required_fields_for("license", declared) == ["fullName", "registrationNumber"]
    assert required_fields_for("id", declared) == ["fullName"]


def test_score_text_end_to_end():
    result = score_text(
        IdentityExpectation(full_name="Ahmed Benali"),
        "Licence d'exercice\nDr Ahmed Benali",
        "license",
    )

    assert result.success is True
    assert result.fields["fullName"].similarity >= 0.95
    assert result.to_wire()["overallScore"] == result.overall_score
