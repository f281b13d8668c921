from sheet_relay.form_links import form_base_url, form_submit_url, normalize_form_url

VIEW = "https://docs.google.com/forms/d/e/ABC/viewform"


def test_normalize_keeps_view_links():
    assert normalize_form_url(VIEW) == VIEW
    assert normalize_form_url(normalize_form_url(VIEW)) == VIEW
    prefilled = VIEW + "?usp=pp_url&entry.1=a"
    assert normalize_form_url(prefilled) == prefilled


def test_normalize_rewrites_edit_links():
    assert normalize_form_url("https://docs.google.com/forms/d/ABC/edit") == "https://docs.google.com/forms/d/ABC/viewform"
    assert normalize_form_url("https://docs.google.com/forms/d/ABC/edit?x=y") == "https://docs.google.com/forms/d/ABC/viewform"
    assert normalize_form_url("https://docs.google.com/forms/d/ABC/EDIT/") == "https://docs.google.com/forms/d/ABC/viewform"


def test_normalize_trims_and_rejects_empty():
    assert normalize_form_url(f"  {VIEW}\n") == VIEW
    assert normalize_form_url("   ") is None
    assert normalize_form_url(None) is None


def test_submit_url_from_view_link():
    assert form_submit_url(VIEW) == "https://docs.google.com/forms/d/e/ABC/formResponse"
    assert form_submit_url(VIEW + "?usp=pp_url&entry.1=a") == "https://docs.google.com/forms/d/e/ABC/formResponse"


def test_submit_url_from_edit_link():
    assert form_submit_url("https://docs.google.com/forms/d/ABC/edit?usp=sharing") == (
        "https://docs.google.com/forms/d/ABC/formResponse"
    )


def test_submit_url_none_without_viewform_segment():
    assert form_submit_url("https://forms.gle/abc123") is None
    assert form_submit_url("") is None


def test_base_url_strips_query():
    assert form_base_url(VIEW + "?usp=pp_url&entry.1=a") == VIEW
    assert form_base_url("https://docs.google.com/forms/d/ABC/edit?x=1") == "https://docs.google.com/forms/d/ABC/viewform"
    assert form_base_url("") is None
