from __future__ import annotations

from datetime import date, datetime, time

import pytest

from lifepath import generation
from lifepath.db import SessionLocal
from lifepath.errors import TemplateInUse, TemplateNotFound
from lifepath.models import GeneratedTaskRecord
from lifepath.templates import (
    TemplateTaskFields,
    TemplateTaskUpdate,
    TemplateUpdate,
    active_template_tasks,
    add_template_tasks,
    deactivate_template,
    delete_template,
    delete_template_task,
    get_template,
    get_template_with_tasks,
    list_active_templates,
    update_template,
    update_template_task,
    users_with_active_templates,
)

NOW = datetime(2024, 5, 1, 0, 0)


def test_create_assigns_order_in_insertion_order(user_id, make_template):
    tpl_id = make_template(user_id, tasks=[("B", time(7, 0)), ("A", time(6, 0)), ("C", None)])
    with SessionLocal() as s:
        _, tasks = get_template_with_tasks(s, tpl_id, user_id)
        assert [t.title for t in tasks] == ["B", "A", "C"]
        assert [t.order_index for t in tasks] == [0, 1, 2]


def test_added_tasks_continue_after_highest_order_index(user_id, make_template):
    tpl_id = make_template(user_id)
    with SessionLocal() as s:
        tpl = get_template(s, tpl_id, user_id)
        added = add_template_tasks(s, tpl, [TemplateTaskFields(title="Stretch"), TemplateTaskFields(title="Journal")])
        s.commit()
        assert [t.order_index for t in added] == [2, 3]


def test_list_active_skips_inactive_and_empty_templates(user_id, make_template):
    keep = make_template(user_id, name="Morning")
    make_template(user_id, name="Paused", active=False)
    make_template(user_id, name="Empty", tasks=[])
    with SessionLocal() as s:
        assert [t.id for t in list_active_templates(s, user_id)] == [keep]


def test_template_with_only_inactive_tasks_is_not_listed(user_id, make_template):
    tpl_id = make_template(user_id, tasks=[("Only", time(9, 0))])
    with SessionLocal() as s:
        _, tasks = get_template_with_tasks(s, tpl_id, user_id)
        update_template_task(s, tasks[0].id, user_id, TemplateTaskUpdate(is_active=False))
        s.commit()
        assert list_active_templates(s, user_id) == []
        assert active_template_tasks(s, tpl_id) == []


def test_users_with_active_templates(make_user, make_template):
    a = make_user(name="A")
    b = make_user(name="B")
    make_user(name="C")
    make_template(a)
    make_template(b, active=False)
    with SessionLocal() as s:
        assert users_with_active_templates(s) == [a]


def test_template_is_scoped_to_its_owner(make_user, make_template):
    owner = make_user(name="Owner")
    other = make_user(name="Other")
    tpl_id = make_template(owner)
    with SessionLocal() as s:
        with pytest.raises(TemplateNotFound):
            get_template(s, tpl_id, other)


def test_update_template_rejects_blank_name(user_id, make_template):
    tpl_id = make_template(user_id)
    with SessionLocal() as s:
        with pytest.raises(ValueError):
            update_template(s, tpl_id, user_id, TemplateUpdate(name="   "))


def test_update_objects_have_a_closed_field_set():
    with pytest.raises(TypeError):
        TemplateUpdate(colour="red")


def test_invalid_priority_rejected(user_id, make_template):
    tpl_id = make_template(user_id)
    with SessionLocal() as s:
        tpl = get_template(s, tpl_id, user_id)
        with pytest.raises(ValueError):
            add_template_tasks(s, tpl, [TemplateTaskFields(title="X", priority="urgent")])


def test_deactivate_then_delete_unused_template(user_id, make_template):
    tpl_id = make_template(user_id)
    with SessionLocal() as s:
        assert deactivate_template(s, tpl_id, user_id).is_active is False
        delete_template(s, tpl_id, user_id)
        s.commit()
        with pytest.raises(TemplateNotFound):
            get_template(s, tpl_id, user_id)


def test_template_with_history_cannot_be_deleted(user_id, make_template):
    tpl_id = make_template(user_id)
    generation.generate(user_id, tpl_id, date(2024, 5, 1), now=NOW)
    with SessionLocal() as s:
        with pytest.raises(TemplateInUse):
            delete_template(s, tpl_id, user_id)


def test_deleting_a_template_task_keeps_generated_links(user_id, make_template):
    tpl_id = make_template(user_id)
    generation.generate(user_id, tpl_id, date(2024, 5, 1), now=NOW)
    with SessionLocal() as s:
        _, tasks = get_template_with_tasks(s, tpl_id, user_id)
        removed_id, kept_id = tasks[0].id, tasks[1].id
        delete_template_task(s, removed_id, user_id)
        s.commit()
        records = s.query(GeneratedTaskRecord).order_by(GeneratedTaskRecord.id).all()
        assert len(records) == 2
        assert records[0].template_task_id is None
        assert records[1].template_task_id == kept_id
