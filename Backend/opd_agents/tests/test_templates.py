from opd_agents.templates import render_template, template_placeholders


def test_replaces_every_occurrence():
    out = render_template("{{name}} / {{name}} / {{name}}", {"name": "Asha"})
    assert out == "Asha / Asha / Asha"


def test_unknown_keys_stay_literal():
    out = render_template("Hi {{patientName}}, see {{doctorName}}", {"patientName": "Ravi"})
    assert out == "Hi Ravi, see {{doctorName}}"


def test_values_are_not_rescanned():
    out = render_template("{{a}} {{b}}", {"a": "{{b}}", "b": "x"})
    assert out == "{{b}} x"


def test_non_string_values_are_stringified():
    assert render_template("Total {{n}}", {"n": 3}) == "Total 3"


def test_empty_template_and_vars():
    assert render_template("", {"a": "b"}) == ""
    assert render_template("plain text", {}) == "plain text"


def test_template_placeholders_in_order_without_duplicates():
    tpl = "Hi {{patientName}}, {{clinicName}} bill {{billNumber}} - {{patientName}}"
    assert template_placeholders(tpl) == ["patientName", "clinicName", "billNumber"]
