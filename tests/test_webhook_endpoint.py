from datetime import datetime, timezone

import httpx

from app.config import settings
from app.main import app
from app.models import Association, Conversation, Message, Patient
from app.services.result import Result

HEADERS = {"shared-secret": "test-secret"}


def _post(api_client, payload, headers=HEADERS, path="/webhook/whatsapp"):
    return api_client.post(path, json=payload, headers=headers)


class TestWebhookAuth:
    def test_wrong_secret_is_rejected(self, api_client, association, make_waha_message):
        response = _post(api_client, make_waha_message(), headers={"shared-secret": "nope"})
        assert response.status_code == 401

    def test_missing_secret_is_rejected(self, api_client, association, make_waha_message):
        response = _post(api_client, make_waha_message(), headers={})
        assert response.status_code == 401

    def test_alternate_header_is_accepted(self, api_client, association, make_waha_message):
        response = _post(api_client, make_waha_message(), headers={"X-Webhook-Secret": "test-secret"})
        assert response.status_code == 200

    def test_unconfigured_secret_fails_closed(self, api_client, association, make_waha_message, monkeypatch):
        monkeypatch.setattr(settings, "webhook_secret", None)
        response = _post(api_client, make_waha_message())
        assert response.status_code == 500

    def test_invalid_payload(self, api_client, association):
        response = _post(api_client, {"payload": {}})
        assert response.status_code == 400


class TestIgnoredEvents:
    def test_non_message_event(self, api_client, association, db):
        response = _post(api_client, {"event": "session.status", "session": "sativar-session", "payload": {}})

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        assert db.query(Patient).count() == 0

    def test_own_messages(self, api_client, association, db, make_waha_message):
        response = _post(api_client, make_waha_message(fromMe=True))

        assert response.json() == {
            "status": "ignored",
            "reason": "from_me",
            "conversation_id": None,
            "conversation_status": None,
            "escalated": False,
        }
        assert db.query(Message).count() == 0

    def test_group_chat(self, api_client, association, make_waha_message):
        response = _post(api_client, make_waha_message(phone="120363025555555555@g.us"))
        assert response.json()["reason"] == "group_or_broadcast"

    def test_invalid_phone(self, api_client, association, db, make_waha_message):
        response = _post(api_client, make_waha_message(phone="12345@c.us"))

        assert response.status_code == 200
        assert response.json()["reason"] == "invalid_phone"
        assert db.query(Patient).count() == 0


class TestTenantResolution:
    def test_unknown_session(self, api_client, association, make_waha_message):
        response = _post(api_client, make_waha_message(session="unknown-session"))
        assert response.status_code == 404

    def test_inactive_association(self, api_client, association, db, make_waha_message):
        association.is_active = False
        db.commit()

        response = _post(api_client, make_waha_message())
        assert response.status_code == 403

    def test_subdomain_in_path(self, api_client, association, make_waha_message):
        response = _post(api_client, make_waha_message(session="any"), path="/webhook/whatsapp/sativar")
        assert response.status_code == 200
        assert response.json()["status"] == "processed"

    def test_unknown_subdomain_in_path(self, api_client, association, make_waha_message):
        response = _post(api_client, make_waha_message(), path="/webhook/whatsapp/outra")
        assert response.status_code == 404


class TestInboundFlow:
    def test_two_messages_one_patient_one_conversation(self, api_client, association, db, gateway, make_waha_message):
        first = _post(api_client, make_waha_message(body="Olá, tudo bem?", id="m1"))
        second = _post(api_client, make_waha_message(body="Quero saber dos produtos", id="m2"))

        assert first.status_code == 200
        assert second.status_code == 200
        assert first.json()["conversation_id"] == second.json()["conversation_id"]

        patients = db.query(Patient).all()
        assert len(patients) == 1
        assert patients[0].whatsapp == "11999999999"
        assert patients[0].status == "LEAD"
        assert patients[0].name == "Maria"

        open_conversations = db.query(Conversation).filter(Conversation.status != "resolvida").all()
        assert len(open_conversations) == 1

        messages = (
            db.query(Message)
            .filter(Message.conversation_id == open_conversations[0].id)
            .order_by(Message.timestamp)
            .all()
        )
        patient_messages = [m.content for m in messages if m.sender_type == "paciente"]
        assert patient_messages == ["Olá, tudo bem?", "Quero saber dos produtos"]
        assert [m.sender_type for m in messages] == ["paciente", "ia", "paciente", "ia"]
        assert gateway.send_text.await_count == 2

    def test_ai_reply_is_sent_to_sender(self, api_client, association, gateway, make_waha_message):
        _post(api_client, make_waha_message(body="Oi"))

        session, chat_id, text = gateway.send_text.await_args.args
        assert session == "sativar-session"
        assert chat_id == "5511999999999@c.us"
        assert 'Recebi sua mensagem: "Oi"' in text

    def test_delivery_failure_keeps_history(self, api_client, association, db, gateway, make_waha_message):
        gateway.send_text.return_value = Result.failure("HTTP 500", "delivery_failed")

        response = _post(api_client, make_waha_message(body="Oi"))

        assert response.status_code == 200
        reply = db.query(Message).filter(Message.sender_type == "ia").one()
        assert reply.message_metadata["delivered"] is False

    def test_keyword_escalates_to_queue(self, api_client, association, db, gateway, make_waha_message):
        response = _post(api_client, make_waha_message(body="Quero FINALIZAR meu pedido"))

        data = response.json()
        assert data["conversation_status"] == "fila_humano"
        assert data["escalated"] is True
        conversation = db.query(Conversation).one()
        assert conversation.queued_at is not None
        texts = [m.content for m in db.query(Message).order_by(Message.timestamp).all()]
        assert any(t.startswith("Obrigado! Agora vou conectar") for t in texts)
        assert gateway.send_text.await_count == 2
        notifications = app.state.notification_bus.recent()
        assert notifications[0].type == "new_conversation"

    def test_queued_conversation_gets_no_ai_reply(self, api_client, association, db, gateway, make_waha_message):
        _post(api_client, make_waha_message(body="confirmar"))
        gateway.send_text.reset_mock()

        response = _post(api_client, make_waha_message(body="Alguém aí?"))

        assert response.json()["conversation_status"] == "fila_humano"
        gateway.send_text.assert_not_awaited()
        last = db.query(Message).order_by(Message.timestamp.desc()).first()
        assert last.sender_type == "paciente"

    def test_directory_outage_still_records_message(
        self, api_client, association, db, directory_stub, make_waha_message
    ):
        directory_stub.error = httpx.ReadTimeout("timed out")

        response = _post(api_client, make_waha_message(phone="5585988776655@c.us", body="Oi"))

        assert response.json()["status"] == "processed"
        patient = db.query(Patient).one()
        assert patient.status == "LEAD"
        assert patient.whatsapp == "85988776655"

    def test_member_is_greeted_by_interlocutor(self, api_client, association, directory_stub, gateway, make_waha_message):
        directory_stub.records_by_phone = {
            "85996201636": [
                {
                    "id": 4501,
                    "acf": {
                        "telefone": "85996201636",
                        "nome_completo": "Lucas Guerra",
                        "nome_responsavel": "Carolina Guerra",
                        "tipo_associacao": "assoc_respon",
                    },
                }
            ]
        }

        _post(api_client, make_waha_message(phone="5585996201636@c.us", body="Bom dia"))

        text = gateway.send_text.await_args.args[2]
        assert text.startswith("Olá, Carolina!")
        assert "Lucas Guerra" in text

    def test_resolved_conversation_starts_new_one(self, api_client, association, db, make_waha_message):
        first = _post(api_client, make_waha_message(body="finalizar")).json()
        conversation_id = first["conversation_id"]
        base = f"/associations/sativar/conversations/{conversation_id}/actions"
        assert api_client.post(base, json={"action": "take", "actor_id": "att-1"}).status_code == 200
        closed = api_client.post(base, json={"action": "resolve", "actor_id": "att-1"})
        assert closed.json()["new_state"] == "resolvida"

        resolved = db.query(Conversation).filter(Conversation.status == "resolvida").one()
        assert resolved.ended_at is not None

        second = _post(api_client, make_waha_message(body="Oi de novo")).json()

        assert second["conversation_id"] != conversation_id
        assert second["conversation_status"] == "com_ia"
        assert db.query(Conversation).count() == 2


class TestProbe:
    def test_get_probe(self, api_client):
        response = api_client.get("/webhook/whatsapp")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


def test_second_tenant_messages_are_isolated(api_client, association, db, make_waha_message):
    now = datetime.now(timezone.utc)
    db.add(
        Association(
            subdomain="apoio",
            name="Apoio",
            is_active=True,
            whatsapp_session="apoio-session",
            created_at=now,
            updated_at=now,
        )
    )
    db.commit()

    _post(api_client, make_waha_message(session="sativar-session"))
    _post(api_client, make_waha_message(session="apoio-session"))

    assert db.query(Patient).count() == 2
    assert db.query(Conversation).count() == 2
