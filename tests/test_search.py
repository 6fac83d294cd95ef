import threading

from clinica.search import (
    ClientMatch,
    Debouncer,
    SearchSession,
    prefill_from_query,
    search_clients,
    search_plan,
)


def test_search_plan():
    assert search_plan("612") == [("phone", "612")]
    assert search_plan("12") == []
    assert search_plan("Giulia") == [("name", "Giulia")]
    assert search_plan("giulia@mail.es") == [("name", "giulia@mail.es"), ("email", "giulia@mail.es")]
    assert search_plan("  ") == []


def test_phone_search_ignores_formatting(org_id, client_id):
    results = search_clients(org_id, "612 345")
    assert [(r.id, r.match_type) for r in results] == [(client_id, "phone")]


def test_name_search_is_case_insensitive(org_id, client_id, new_client):
    other = new_client("Giuliano Neri", phone="699000111")

    results = search_clients(org_id, "GIULI")

    assert {r.id for r in results} == {client_id, other}
    assert all(r.match_type == "name" for r in results)
    assert search_clients(org_id, "giuli", exclude_ids=[client_id])[0].id == other


def test_email_search(org_id, new_client):
    client = new_client("Anna Sala", email="anna.sala@example.com")

    results = search_clients(org_id, "sala@example")

    assert results[0].id == client
    assert results[0].match_type == "email"


def test_search_is_scoped_to_organization(org_id, client_id):
    assert search_clients(org_id + 1, "Giulia") == []


def test_prefill_from_query():
    assert prefill_from_query("+34 612") == {"phone": "34612", "first_name": "", "last_name": ""}
    assert prefill_from_query("Maria de la Cruz") == {
        "phone": "",
        "first_name": "Maria",
        "last_name": "de la Cruz",
    }
    assert prefill_from_query("") == {"phone": "", "first_name": "", "last_name": ""}


def test_stale_results_are_dropped(org_id):
    received = []
    session = SearchSession(org_id, received.append, delay=60)
    old = session.next_token()
    new = session.next_token()
    match = ClientMatch(1, "Giulia Verdi", "612345678", None, "name")

    assert not session.deliver(old, [match])
    assert session.deliver(new, [])
    assert received == [[]]
    session.close()


def test_empty_query_clears_results_immediately(org_id):
    received = []
    with SearchSession(org_id, received.append, delay=60) as session:
        session.submit("")
    assert received == [[]]


def test_session_runs_debounced_search(org_id, client_id):
    done = threading.Event()
    received = []

    def on_results(results):
        received.append(results)
        done.set()

    with SearchSession(org_id, on_results, delay=0.01) as session:
        session.submit("Giul")
        assert done.wait(5)
    assert [r.id for r in received[0]] == [client_id]


def test_debouncer_cancel():
    calls = []
    debouncer = Debouncer(lambda: calls.append(1), delay=60)

    debouncer.trigger()
    assert debouncer.pending
    debouncer.cancel()

    assert not debouncer.pending
    assert calls == []
