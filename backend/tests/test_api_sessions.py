def _new_session(client, name="Goblin ambush"):
    r = client.post("/sessions", json={"name": name})
    assert r.status_code == 200, r.text
    return r.json()["id"]


def _new_subject(client, sid, **kw):
    payload = {"name": "Subject", **kw}
    r = client.post(f"/sessions/{sid}/subjects", json=payload)
    assert r.status_code == 200, r.text
    return r.json()["id"]


def _apply(client, sid, command, actor=None):
    body = {"command": command}
    if actor is not None:
        body["actor"] = actor
    r = client.post(f"/sessions/{sid}/commands:apply", json=body)
    assert r.status_code == 200, r.text
    return r.json()


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_unknown_session_is_404(client):
    assert client.get("/sessions/nope/state").status_code == 404
    r = client.post("/sessions/nope/commands:apply", json={"command": {"type": "NextTurn"}})
    assert r.status_code == 404


def test_bad_command_is_422(client):
    sid = _new_session(client)
    r = client.post(f"/sessions/{sid}/commands:apply", json={"command": {"type": "Fireball"}})
    assert r.status_code == 422


def test_combat_flow_over_http(client):
    sid = _new_session(client)
    a = _new_subject(client, sid, name="Aria", character_id="char-aria")
    b = _new_subject(client, sid, name="Goblin")

    out = _apply(
        client,
        sid,
        {
            "type": "StartCombat",
            "combatants": [
                {"subject_id": a, "initiative": 15},
                {"subject_id": b, "initiative": 10},
            ],
        },
    )
    assert out["round"] == 1
    assert out["active_id"] == a
    assert [e["subjectId"] for e in out["order"]] == [a, b, "-1"]

    _apply(client, sid, {"type": "AddEffect", "subject_id": b, "key": "stunned"})
    r = client.get(f"/sessions/{sid}/subjects/{b}")
    assert r.json()["markers"] == ["fist"]
    assert r.json()["effects"][0]["name"] == "Stunned"

    out = _apply(client, sid, {"type": "NextTurn"})
    assert out["active_id"] == b
    out = _apply(client, sid, {"type": "NextTurn"})
    assert out["active_id"] == a
    assert out["round"] == 2

    # эффект на b (не связан с персонажем -> лежит в заметках) истёк на его ходу
    r = client.get(f"/sessions/{sid}/subjects/{b}")
    assert r.json()["effects"] == []
    assert r.json()["markers"] == []

    state = client.get(f"/sessions/{sid}/state").json()
    assert state["round"] == 2
    assert state["active_id"] == a
    assert state["seq"] == out["seq"]


def test_rejected_command_does_not_persist(client):
    sid = _new_session(client)
    a = _new_subject(client, sid, name="Aria", controlled_by=["alice"])
    _apply(client, sid, {"type": "StartCombat", "combatants": [{"subject_id": a, "initiative": 5}]})
    before = client.get(f"/sessions/{sid}/state").json()

    out = _apply(client, sid, {"type": "StopCombat"}, actor={"player_id": "alice", "is_gm": False})

    assert out["events_delta"][0]["type"] == "CommandRejected"
    assert out["events_delta"][0]["payload"]["code"] == "PERMISSION_DENIED"
    after = client.get(f"/sessions/{sid}/state").json()
    assert after["order"] == before["order"]
    assert after["round"] == 1


def test_hidden_effects_filtered_for_players(client):
    sid = _new_session(client)
    a = _new_subject(client, sid, name="Aria", controlled_by=["alice"])
    _apply(
        client,
        sid,
        {
            "type": "AddEffect",
            "subject_id": a,
            "key": "Doom",
            "overrides": {"visibility": "hide"},
        },
    )
    _apply(client, sid, {"type": "AddEffect", "subject_id": a, "key": "prone"})

    gm_view = client.get(f"/sessions/{sid}/subjects/{a}").json()
    player_view = client.get(
        f"/sessions/{sid}/subjects/{a}", params={"player_id": "alice", "is_gm": False}
    ).json()

    assert sorted(e["name"] for e in gm_view["effects"]) == ["Doom", "Prone"]
    assert [e["name"] for e in player_view["effects"]] == ["Prone"]


def test_marker_change_updates_effects(client):
    sid = _new_session(client)
    a = _new_subject(client, sid, name="Aria", markers=["fist"])

    r = client.put(
        f"/sessions/{sid}/subjects/{a}/markers", json={"markers": ["fist", "grab"]}
    )
    assert r.status_code == 200, r.text
    assert [e["name"] for e in r.json()["effects"]] == ["Grappled"]

    r = client.put(f"/sessions/{sid}/subjects/{a}/markers", json={"markers": ["fist"]})
    assert r.json()["effects"] == []

    r = client.put(
        f"/sessions/{sid}/subjects/{a}/markers",
        json={"markers": [], "actor": {"player_id": "mallory", "is_gm": False}},
    )
    assert r.status_code == 403


def test_library_import_is_session_scoped(client):
    s1 = _new_session(client, "one")
    s2 = _new_session(client, "two")

    out = _apply(
        client,
        s1,
        {
            "type": "ImportLibrary",
            "library_json": '{"hex": {"name": "Hex", "type": "spell", "icon": "skull"}}',
        },
    )
    assert out["events_delta"][0]["type"] == "LibraryImported"

    a = _new_subject(client, s1, name="A")
    b = _new_subject(client, s2, name="B")
    _apply(client, s1, {"type": "AddEffect", "subject_id": a, "key": "hex"})
    _apply(client, s2, {"type": "AddEffect", "subject_id": b, "key": "hex"})

    assert client.get(f"/sessions/{s1}/subjects/{a}").json()["effects"][0]["kind"] == "spell"
    # во второй сессии hex нет в библиотеке -> свободная заметка
    assert client.get(f"/sessions/{s2}/subjects/{b}").json()["effects"][0]["kind"] == "reminder"


def test_empty_override_name_is_422(client):
    sid = _new_session(client)
    a = _new_subject(client, sid, name="Aria")

    r = client.post(
        f"/sessions/{sid}/commands:apply",
        json={
            "command": {
                "type": "AddEffect",
                "subject_id": a,
                "key": "stunned",
                "overrides": {"name": ""},
            }
        },
    )

    assert r.status_code == 422
    assert client.get(f"/sessions/{sid}/subjects/{a}").json()["effects"] == []
