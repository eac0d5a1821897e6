from app.services.flow_state import (
    FlowState,
    QuestionKey,
    apply_inbound_text,
    load_flow_state,
    merge_known_fields,
    next_question,
    question_order,
    record_question_asked,
)


class TestMergeKnownFields:
    def test_empty_values_never_overwrite(self):
        merged = merge_known_fields({"name": "Ahmed", "email": "a@b.co"}, {"name": None, "email": ""})
        assert merged == {"name": "Ahmed", "email": "a@b.co"}

    def test_new_values_added(self):
        assert merge_known_fields({"name": "Ahmed"}, {"service": "GOLDEN_VISA"}) == {
            "name": "Ahmed",
            "service": "GOLDEN_VISA",
        }

    def test_nested_dicts_merge(self):
        merged = merge_known_fields({"extra": {"a": 1}}, {"extra": {"b": 2, "a": None}})
        assert merged == {"extra": {"a": 1, "b": 2}}

    def test_none_inputs(self):
        assert merge_known_fields(None, None) == {}


class TestNextQuestion:
    def test_starts_with_name(self):
        assert next_question(FlowState()) == QuestionKey.NAME

    def test_skips_known_fields(self):
        state = FlowState(known_fields={"name": "Ahmed", "service": "GOLDEN_VISA"})
        assert next_question(state) == QuestionKey.NATIONALITY

    def test_renewal_asks_expiry(self):
        state = FlowState(known_fields={"name": "Ahmed", "service": "VISA_RENEWAL", "nationality": "Indian"})
        assert next_question(state) == QuestionKey.EXPIRY_DATE

    def test_business_setup_asks_counts(self):
        known = {"name": "Ahmed", "service": "MAINLAND_BUSINESS_SETUP", "nationality": "Indian"}
        assert next_question(FlowState(known_fields=known)) == QuestionKey.PARTNERS_COUNT
        known["partners_count"] = 2
        assert next_question(FlowState(known_fields=known)) == QuestionKey.VISAS_COUNT

    def test_done_when_everything_known(self):
        known = {"name": "Ahmed", "service": "GOLDEN_VISA", "nationality": "Indian"}
        assert next_question(FlowState(known_fields=known)) is None

    def test_bounded_by_max_questions(self, monkeypatch):
        monkeypatch.setattr("app.services.flow_state.settings.max_qualification_questions", 2)
        state = FlowState(known_fields={"asked_questions": ["NAME", "SERVICE"]})
        # both asked questions are still unanswered: re-asking is allowed
        assert next_question(state) == QuestionKey.NAME
        known = {"name": "Ahmed", "service": "GOLDEN_VISA", "asked_questions": ["NAME", "SERVICE"]}
        state = FlowState(known_fields=known)
        assert next_question(state) is None

    def test_question_order_unknown_service(self):
        assert question_order("SOMETHING_ELSE") == (QuestionKey.NAME, QuestionKey.SERVICE, QuestionKey.NATIONALITY)


class TestRecordQuestionAsked:
    def test_sets_pending_key(self, db, make_thread):
        _, _, conversation = make_thread()

        record_question_asked(db, conversation, QuestionKey.NATIONALITY)
        record_question_asked(db, conversation, QuestionKey.NATIONALITY)

        state = load_flow_state(conversation)
        assert state.last_question_key == QuestionKey.NATIONALITY
        assert state.waiting
        assert state.last_question_at is not None
        assert state.asked_questions == ["NATIONALITY"]

    def test_unknown_stored_key_loads_as_not_waiting(self, db, make_thread):
        _, _, conversation = make_thread()
        conversation.last_question_key = "SHOE_SIZE"
        assert load_flow_state(conversation).waiting is False


class TestApplyInboundText:
    def test_targeted_answer_is_stored_and_clears_key(self, db, make_thread):
        contact, lead, conversation = make_thread()
        record_question_asked(db, conversation, QuestionKey.NATIONALITY)

        update = apply_inbound_text(db, conversation, contact, lead, "USA")

        assert update.answered == QuestionKey.NATIONALITY
        assert update.pending is None
        assert conversation.last_question_key is None
        assert conversation.known_fields["nationality"] == "USA"
        assert conversation.known_fields["qualification_nationality"] == "USA"
        assert contact.nationality == "USA"
        assert lead.data_json["nationality"] == "USA"

    def test_failed_answer_keeps_key_and_fields(self, db, make_thread):
        contact, lead, conversation = make_thread()
        conversation.known_fields = {"name": "Ahmed"}
        record_question_asked(db, conversation, QuestionKey.NATIONALITY)

        update = apply_inbound_text(db, conversation, contact, lead, "ok")

        assert update.answered is None
        assert update.pending == QuestionKey.NATIONALITY
        assert conversation.last_question_key == QuestionKey.NATIONALITY.value
        assert conversation.known_fields["name"] == "Ahmed"

    def test_general_extraction_from_multiline_message(self, db, make_thread):
        contact, lead, conversation = make_thread()

        update = apply_inbound_text(db, conversation, contact, lead, "Abdurahman\nBusiness\nChina")

        assert update.extracted["name"] == "Abdurahman"
        assert update.extracted["service"] == "MAINLAND_BUSINESS_SETUP"
        assert update.extracted["nationality"] == "China"
        assert contact.full_name == "Abdurahman"
        assert contact.nationality == "China"
        assert lead.service_type == "MAINLAND_BUSINESS_SETUP"

    def test_known_field_not_downgraded(self, db, make_thread):
        contact, lead, conversation = make_thread()
        apply_inbound_text(db, conversation, contact, lead, "I am from India")

        update = apply_inbound_text(db, conversation, contact, lead, "my friend is from Egypt")

        assert "nationality" not in update.extracted
        assert conversation.known_fields["nationality"] == "India"
        assert contact.nationality == "India"

    def test_volunteered_pending_field_clears_key(self, db, make_thread):
        contact, lead, conversation = make_thread()
        record_question_asked(db, conversation, QuestionKey.SERVICE)

        update = apply_inbound_text(db, conversation, contact, lead, "golden visa please")

        assert update.answered == QuestionKey.SERVICE
        assert conversation.last_question_key is None

    def test_blank_text_changes_nothing(self, db, make_thread):
        contact, lead, conversation = make_thread()
        record_question_asked(db, conversation, QuestionKey.NAME)

        update = apply_inbound_text(db, conversation, contact, lead, "   ")

        assert not update.changed
        assert conversation.last_question_key == QuestionKey.NAME.value
