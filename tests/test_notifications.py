"""
Tests for the NotificationPropagator: cancellation cascades, executor
notifications, completion hooks and task queue callbacks.
"""

import threading

from step_orchestrator.core.executor_registry import ExecutorRegistry
from step_orchestrator.core.notifications import NotificationPropagator
from step_orchestrator.core.task_store import TaskStore
from step_orchestrator.models import Task, TaskEventType, TaskStatus, TaskType
from tests.fakes import ScriptedExecutor


class NotificationTestBase:
    def setup_method(self):
        self.store = TaskStore()
        self.registry = ExecutorRegistry()
        self.executor = ScriptedExecutor("delegate")
        self.registry.register_executor(self.executor)
        self.completed = []
        self.assigned = []
        self.propagator = NotificationPropagator(
            "lead",
            self.store,
            self.registry,
            on_project_completed=self.completed.append,
            on_task_assigned=self.assigned.append,
        )
        self.propagator.start()

    def add_step(self, project_id, creator="lead"):
        return self.store.add_task(project_id, Task(
            "Delegate", type=TaskType.STEP.value, creator=creator, props={"step_type": "delegate"}
        ))


class TestCancellationCascade(NotificationTestBase):
    """Cancelling a task cancels everything delegated below it."""

    def test_nested_cascade(self):
        root = self.store.create_project("Root", owner="lead")
        step = self.add_step(root.id)
        child = self.store.create_project("Child", parent_task_id=step.id)
        t1 = self.store.add_task(child.id, Task("t1", creator="lead", assignee="worker"))
        done = self.store.add_task(child.id, Task("done", creator="lead", assignee="worker"))
        grandchild = self.store.create_project("Grandchild", parent_task_id=t1.id)
        t2 = self.store.add_task(grandchild.id, Task("t2", creator="worker"))
        great = self.store.create_project("Great", parent_task_id=t2.id)
        t3 = self.store.add_task(great.id, Task("t3", creator="other"))
        self.store.complete_task(done.id)

        self.store.cancel_task(step.id)

        assert t1.status == TaskStatus.CANCELLED
        assert t2.status == TaskStatus.CANCELLED
        assert t3.status == TaskStatus.CANCELLED
        assert done.status == TaskStatus.COMPLETED

    def test_cascade_is_idempotent(self):
        root = self.store.create_project("Root", owner="lead")
        step = self.add_step(root.id)
        child = self.store.create_project("Child", parent_task_id=step.id)
        self.store.add_task(child.id, Task("t1", creator="lead"))
        second = NotificationPropagator("lead", self.store, self.registry)
        second.start()

        self.store.cancel_task(step.id)
        self.store.cancel_task(step.id)

        assert all(t.is_terminal for t in self.store.get_project_tasks(child.id))
        assert self.store.event_bus.dead_letter_queue == []

    def test_tasks_of_other_creators_cascade(self):
        root = self.store.create_project("Root", owner="system")
        step = self.add_step(root.id, creator="system")
        child = self.store.create_project("Child", parent_task_id=step.id)
        task = self.store.add_task(child.id, Task("t1", creator="system", assignee="worker"))

        self.store.cancel_task(step.id)

        assert task.status == TaskStatus.CANCELLED
        assert self.store.is_project_terminal(child.id)


class TestExecutorNotifications(NotificationTestBase):
    """Plain tasks created by the agent notify the root step's executor."""

    def setup_method(self):
        super().setup_method()
        self.root = self.store.create_project("Root", owner="other")
        self.step = self.add_step(self.root.id)
        self.child = self.store.create_project("Child", parent_task_id=self.step.id)

    def test_completion_reaches_root_executor(self):
        task = self.store.add_task(self.child.id, Task("t1", creator="lead", assignee="worker"))
        self.store.add_task(self.child.id, Task("t2", creator="lead", assignee="worker"))

        self.store.complete_task(task.id)

        assert len(self.executor.notifications) == 1
        notification = self.executor.notifications[0]
        assert notification.event_type == TaskEventType.TASK_COMPLETED
        assert notification.task.id == task.id
        assert notification.project.id == self.child.id
        assert notification.step_task.id == self.step.id

    def test_cancellation_reaches_root_executor(self):
        task = self.store.add_task(self.child.id, Task("t1", creator="lead"))

        self.store.cancel_task(task.id)

        assert [n.event_type for n in self.executor.notifications] == [TaskEventType.TASK_CANCELLED]

    def test_nested_task_resolves_to_root_step(self):
        middle = self.store.add_task(self.child.id, Task("middle", creator="lead"))
        nested = self.store.create_project("Nested", parent_task_id=middle.id)
        leaf = self.store.add_task(nested.id, Task("leaf", creator="lead"))

        self.store.complete_task(leaf.id)

        assert self.executor.notifications[0].step_task.id == self.step.id

    def test_tasks_of_other_creators_ignored(self):
        task = self.store.add_task(self.child.id, Task("t1", creator="someone"))

        self.store.complete_task(task.id)

        assert self.executor.notifications == []

    def test_root_plain_task_ignored(self):
        project = self.store.create_project("Plain", owner="lead")
        task = self.store.add_task(project.id, Task("t1", creator="lead"))

        self.store.complete_task(task.id)

        assert self.executor.notifications == []


class TestCompletionHook(NotificationTestBase):
    """project_completed reaches the owning agent exactly once."""

    def test_owned_project_completion(self):
        project = self.store.create_project("Mine", owner="lead", tasks=[Task("a"), Task("b")])
        self.store.create_project("Theirs", owner="other", tasks=[Task("c")])

        for listed in self.store.list_projects():
            for task in self.store.get_project_tasks(listed.id):
                self.store.complete_task(task.id)

        assert [p.id for p in self.completed] == [project.id]

    def test_concurrent_sibling_completion_fires_hook_once(self):
        project = self.store.create_project(
            "Mine", owner="lead", tasks=[Task(f"t{i}") for i in range(10)]
        )
        tasks = self.store.get_project_tasks(project.id)
        barrier = threading.Barrier(len(tasks))

        def finish(task_id):
            barrier.wait()
            self.store.complete_task(task_id)

        threads = [threading.Thread(target=finish, args=(t.id,)) for t in tasks]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert [p.id for p in self.completed] == [project.id]

    def test_stop_unsubscribes(self):
        self.propagator.stop()
        project = self.store.create_project("Mine", owner="lead", tasks=[Task("a")])

        self.store.complete_task(self.store.get_project_tasks(project.id)[0].id)

        assert self.completed == []
        assert self.propagator.is_subscribed is False


class TestTaskQueueCallback(NotificationTestBase):
    """Assigned and ready plain tasks reach the agent's queue."""

    def test_assigned_standard_task(self):
        project = self.store.create_project("Work")
        task = self.store.add_task(project.id, Task("t1"))

        self.store.assign_task_to_agent(task.id, "lead")

        assert [t.id for t in self.assigned] == [task.id]

    def test_step_and_foreign_assignments_ignored(self):
        project = self.store.create_project("Work")
        self.store.add_task(project.id, Task("step", type=TaskType.STEP.value, assignee="lead"))
        self.store.add_task(project.id, Task("theirs", assignee="worker"))

        assert self.assigned == []

    def test_ready_dependency(self):
        project = self.store.create_project("Work")
        first = self.store.add_task(project.id, Task("first"))
        second = self.store.add_task(project.id, Task("second", assignee="lead", depends_on=first.id))
        self.assigned.clear()

        self.store.complete_task(first.id)

        assert [t.id for t in self.assigned] == [second.id]
