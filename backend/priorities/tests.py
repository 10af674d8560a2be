"""
Unit Tests for work prioritization.

Covers the four scoring components, reason ordering, urgency classification,
ranking and "today" selection over stored scores, score write-back and the
priority API endpoints. Every time-dependent check uses a fixed ``now``.
"""

from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from io import StringIO

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.test import TestCase
from rest_framework import status
from rest_framework.test import APITestCase

from common.errors import NotFoundError
from crm.models import Client, ClientTier, Project, ProjectStage, ProjectStatus, Task, TaskStatus

from .scoring import (
    ItemKind,
    ItemSnapshot,
    PriorityScorer,
    ReasonTag,
    UrgencyLevel,
    classify_urgency,
    compute_breakdown,
    compute_task_breakdown,
)
from .selection import get_recommended_for_today, get_top_priority_items
from .services import recalculate_all_scores, refresh_project_score, refresh_task_score


NOW = datetime(2024, 3, 10, 9, 0, tzinfo=dt_timezone.utc)


def make_user(username='owner'):
    return get_user_model().objects.create_user(username=username, password='secret')


class DeadlineScoreTests(TestCase):
    """Tests for the deadline component."""

    def setUp(self):
        self.scorer = PriorityScorer()

    def test_no_deadline_scores_zero(self):
        self.assertEqual(self.scorer.calculate_deadline_score(None, NOW), 0)

    def test_overdue_scores_maximum(self):
        """Any deadline in the past earns 40, however long ago."""
        for delta in (timedelta(minutes=1), timedelta(hours=20), timedelta(days=400)):
            with self.subTest(delta=delta):
                self.assertEqual(self.scorer.calculate_deadline_score(NOW - delta, NOW), 40)

    def test_band_boundaries(self):
        """Boundaries belong to the more urgent band."""
        cases = [
            (timedelta(0), 35),
            (timedelta(hours=3), 35),
            (timedelta(days=1), 35),
            (timedelta(days=1, minutes=1), 30),
            (timedelta(days=3), 30),
            (timedelta(days=3, hours=1), 20),
            (timedelta(days=7), 20),
            (timedelta(days=8), 10),
            (timedelta(days=14), 10),
            (timedelta(days=15), 5),
            (timedelta(days=200), 5),
        ]
        for delta, expected in cases:
            with self.subTest(delta=delta):
                self.assertEqual(self.scorer.calculate_deadline_score(NOW + delta, NOW), expected)

    def test_score_never_decreases_as_deadline_approaches(self):
        previous = None
        for days in range(30, -3, -1):
            score = self.scorer.calculate_deadline_score(NOW + timedelta(days=days), NOW)
            if previous is not None:
                self.assertGreaterEqual(score, previous)
            previous = score


class ComponentScoreTests(TestCase):
    """Tests for the value, client and status components."""

    def setUp(self):
        self.scorer = PriorityScorer()

    def test_value_is_linear_up_to_ceiling(self):
        self.assertEqual(self.scorer.calculate_value_score(Decimal('25000')), Decimal('15'))
        self.assertEqual(self.scorer.calculate_value_score(Decimal('50000')), Decimal('30'))
        self.assertEqual(self.scorer.calculate_value_score(Decimal('120000')), Decimal('30'))

    def test_missing_value_scores_zero(self):
        self.assertEqual(self.scorer.calculate_value_score(None), 0)
        self.assertEqual(self.scorer.calculate_value_score(Decimal('0')), 0)

    def test_client_tiers(self):
        self.assertEqual(self.scorer.calculate_client_score(ClientTier.VIP), 20)
        self.assertEqual(self.scorer.calculate_client_score(ClientTier.REGULAR), 10)
        self.assertEqual(self.scorer.calculate_client_score(None), 0)

    def test_task_statuses(self):
        expected = {
            TaskStatus.WAITING_APPROVAL: 10,
            TaskStatus.IN_PROGRESS: 8,
            TaskStatus.TODO: 5,
            TaskStatus.COMPLETED: 0,
            TaskStatus.CANCELLED: 0,
        }
        for task_status, score in expected.items():
            with self.subTest(status=task_status):
                self.assertEqual(self.scorer.calculate_status_score(ItemKind.TASK, task_status), score)

    def test_project_stages(self):
        expected = {
            ProjectStage.REVIEW: 10,
            ProjectStage.DELIVERY: 10,
            ProjectStage.TESTING: 8,
            ProjectStage.DEVELOPMENT: 6,
            ProjectStage.PLANNING: 4,
            ProjectStage.MAINTENANCE: 2,
        }
        for stage, score in expected.items():
            with self.subTest(stage=stage):
                self.assertEqual(self.scorer.calculate_status_score(ItemKind.PROJECT, stage), score)


class BreakdownTests(TestCase):
    """Tests for the combined breakdown and its reasons."""

    def test_bare_item_scores_only_its_status(self):
        """Without deadline, value or client the total is the status score."""
        for kind, item_status in ((ItemKind.TASK, TaskStatus.TODO), (ItemKind.PROJECT, ProjectStage.PLANNING)):
            with self.subTest(kind=kind):
                breakdown = compute_breakdown(ItemSnapshot(kind=kind, status=item_status), NOW)
                self.assertEqual(breakdown.total_score, breakdown.status_score)
                self.assertEqual(breakdown.reasons, [ReasonTag.NORMAL_PRIORITY])
                self.assertEqual(breakdown.reason, "normal priority")

    def test_bare_item_with_high_status_reports_it(self):
        """A status worth 8 or more is reported even with nothing else set."""
        cases = (
            (ItemKind.TASK, TaskStatus.IN_PROGRESS, ReasonTag.WAITING_ON_APPROVAL),
            (ItemKind.PROJECT, ProjectStage.TESTING, ReasonTag.ADVANCED_STAGE),
        )
        for kind, item_status, reason in cases:
            with self.subTest(kind=kind):
                breakdown = compute_breakdown(ItemSnapshot(kind=kind, status=item_status), NOW)
                self.assertEqual(breakdown.total_score, 8)
                self.assertEqual(breakdown.reasons, [reason])

    def test_vip_task_due_today(self):
        """Due today, 25k, VIP, waiting on approval: 35 + 15 + 20 + 10."""
        snapshot = ItemSnapshot(
            kind=ItemKind.TASK,
            status=TaskStatus.WAITING_APPROVAL,
            deadline=NOW.replace(hour=17),
            monetary_value=Decimal('25000'),
            client_tier=ClientTier.VIP
        )
        breakdown = compute_breakdown(snapshot, NOW)

        self.assertEqual(breakdown.deadline_score, 35)
        self.assertEqual(breakdown.value_score, 15.0)
        self.assertEqual(breakdown.client_score, 20)
        self.assertEqual(breakdown.status_score, 10)
        self.assertEqual(breakdown.total_score, 80)
        self.assertEqual(classify_urgency(breakdown.total_score), UrgencyLevel.CRITICAL)

    def test_reasons_are_reported_in_fixed_order(self):
        snapshot = ItemSnapshot(
            kind=ItemKind.TASK,
            status=TaskStatus.WAITING_APPROVAL,
            deadline=NOW + timedelta(days=2),
            monetary_value=Decimal('40000'),
            client_tier=ClientTier.VIP
        )
        breakdown = compute_breakdown(snapshot, NOW)

        self.assertEqual(breakdown.reasons, [
            ReasonTag.URGENT_DEADLINE,
            ReasonTag.HIGH_BUDGET,
            ReasonTag.VIP_CLIENT,
            ReasonTag.WAITING_ON_APPROVAL,
        ])
        self.assertEqual(breakdown.reason, "urgent deadline, high budget, VIP client, waiting on approval")

    def test_project_stage_reason(self):
        breakdown = compute_breakdown(ItemSnapshot(kind=ItemKind.PROJECT, status=ProjectStage.TESTING), NOW)
        self.assertEqual(breakdown.reasons, [ReasonTag.ADVANCED_STAGE])

    def test_regular_client_is_not_a_reason(self):
        snapshot = ItemSnapshot(kind=ItemKind.TASK, status=TaskStatus.TODO, client_tier=ClientTier.REGULAR)
        breakdown = compute_breakdown(snapshot, NOW)
        self.assertEqual(breakdown.total_score, 15)
        self.assertEqual(breakdown.reasons, [ReasonTag.NORMAL_PRIORITY])

    def test_total_rounds_half_up(self):
        # 2,500 is worth 1.5 points; 5 + 1.5 rounds to 7.
        snapshot = ItemSnapshot(kind=ItemKind.TASK, status=TaskStatus.TODO, monetary_value=Decimal('2500'))
        self.assertEqual(compute_breakdown(snapshot, NOW).total_score, 7)

    def test_maximum_total_is_100(self):
        snapshot = ItemSnapshot(
            kind=ItemKind.PROJECT,
            status=ProjectStage.DELIVERY,
            deadline=NOW - timedelta(days=3),
            monetary_value=Decimal('90000'),
            client_tier=ClientTier.VIP
        )
        self.assertEqual(compute_breakdown(snapshot, NOW).total_score, 100)

    def test_urgency_levels(self):
        cases = [(100, UrgencyLevel.CRITICAL), (70, UrgencyLevel.CRITICAL), (69, UrgencyLevel.HIGH),
                 (40, UrgencyLevel.HIGH), (39, UrgencyLevel.MEDIUM), (20, UrgencyLevel.MEDIUM),
                 (19, UrgencyLevel.LOW), (0, UrgencyLevel.LOW)]
        for score, level in cases:
            with self.subTest(score=score):
                self.assertEqual(classify_urgency(score), level)

    def test_task_inherits_project_budget_and_client(self):
        user = make_user()
        customer = Client.objects.create(owner=user, name='Acme', tier=ClientTier.VIP)
        project = Project.objects.create(owner=user, client=customer, name='Site', budget=Decimal('25000'))
        task = Task.objects.create(
            owner=user,
            project=project,
            title='Sign-off',
            status=TaskStatus.WAITING_APPROVAL,
            due_date=NOW.replace(hour=17)
        )
        self.assertEqual(compute_task_breakdown(task, NOW).total_score, 80)


class SelectionTests(TestCase):
    """Tests for ranking and the "today" subset."""

    def setUp(self):
        self.user = make_user()

    def make_task(self, title, score, task_status=TaskStatus.TODO, due=None, created=None):
        task = Task.objects.create(
            owner=self.user, title=title, status=task_status, priority_score=score, due_date=due
        )
        if created is not None:
            Task.objects.filter(pk=task.pk).update(created_at=created)
        return task

    def make_project(self, name, score, project_status=ProjectStatus.IN_PROGRESS, due=None, created=None):
        project = Project.objects.create(
            owner=self.user, name=name, status=project_status, priority_score=score, deadline=due
        )
        if created is not None:
            Project.objects.filter(pk=project.pk).update(created_at=created)
        return project

    def test_top_items_merges_and_truncates(self):
        for title, score in (('t90', 90), ('t60', 60), ('t30', 30)):
            self.make_task(title, score)
        for name, score in (('p80', 80), ('p50', 50), ('p20', 20)):
            self.make_project(name, score)
        self.make_task('done', 99, task_status=TaskStatus.COMPLETED)
        self.make_project('dropped', 95, project_status=ProjectStatus.CANCELLED)

        items = get_top_priority_items(self.user, 4, NOW)

        self.assertEqual([item.title for item in items], ['t90', 'p80', 't60', 'p50'])
        self.assertEqual([item.priority_score for item in items], [90, 80, 60, 50])

    def test_closed_items_never_listed(self):
        self.make_task('done', 99, task_status=TaskStatus.COMPLETED)
        self.make_task('cancelled', 98, task_status=TaskStatus.CANCELLED)
        self.make_project('finished', 97, project_status=ProjectStatus.COMPLETED)
        self.make_task('open', 1)

        items = get_top_priority_items(self.user, 10, NOW)

        self.assertEqual([item.title for item in items], ['open'])

    def test_items_of_other_users_are_not_listed(self):
        other = make_user('other')
        Task.objects.create(owner=other, title='foreign', priority_score=90)
        self.make_task('mine', 10)

        self.assertEqual([item.title for item in get_top_priority_items(self.user, 10, NOW)], ['mine'])

    def test_ties_break_on_age_then_kind(self):
        older = NOW - timedelta(days=2)
        newer = NOW - timedelta(days=1)
        self.make_task('new task', 50, created=newer)
        self.make_task('old task', 50, created=older)
        self.make_project('old project', 50, created=older)

        items = get_top_priority_items(self.user, 10, NOW)

        self.assertEqual([item.title for item in items], ['old project', 'old task', 'new task'])

    def test_items_carry_urgency_and_reason(self):
        self.make_task('urgent', 75, task_status=TaskStatus.WAITING_APPROVAL)

        item = get_top_priority_items(self.user, 1, NOW)[0]

        self.assertEqual(item.urgency_level, UrgencyLevel.CRITICAL)
        self.assertEqual(item.reason, "waiting on approval")

    def test_today_keeps_high_scores_and_due_items(self):
        self.make_task('high score', 60)
        self.make_task('due later today', 30, due=NOW + timedelta(hours=3))
        self.make_task('due next week', 30, due=NOW + timedelta(days=5))
        self.make_project('overdue', 10, due=NOW - timedelta(days=1))

        titles = {item.title for item in get_recommended_for_today(self.user, NOW)}

        self.assertEqual(titles, {'high score', 'due later today', 'overdue'})

    def test_today_draws_from_top_five_only(self):
        for index in range(4):
            self.make_task(f'task {index}', 90 - index)
            self.make_project(f'project {index}', 80 - index)

        items = get_recommended_for_today(self.user, NOW)

        self.assertEqual(len(items), 5)
        self.assertEqual(items[0].title, 'task 0')


class ScoreServiceTests(TestCase):
    """Tests for score write-back."""

    def setUp(self):
        self.user = make_user()
        customer = Client.objects.create(owner=self.user, name='Acme', tier=ClientTier.VIP)
        self.project = Project.objects.create(
            owner=self.user,
            client=customer,
            name='Site',
            budget=Decimal('25000'),
            stage=ProjectStage.REVIEW
        )
        self.task = Task.objects.create(
            owner=self.user,
            project=self.project,
            title='Sign-off',
            status=TaskStatus.WAITING_APPROVAL,
            due_date=NOW.replace(hour=17)
        )

    def test_refresh_task_persists_score(self):
        breakdown = refresh_task_score(self.user, self.task.pk, NOW)

        self.task.refresh_from_db()
        self.assertEqual(breakdown.total_score, 80)
        self.assertEqual(self.task.priority_score, 80)
        self.assertEqual(self.task.priority_calculated_at, NOW)

    def test_refresh_project_persists_score(self):
        breakdown = refresh_project_score(self.user, self.project.pk, NOW)

        self.project.refresh_from_db()
        self.assertEqual(self.project.priority_score, breakdown.total_score)
        self.assertEqual(breakdown.total_score, 15 + 20 + 10)

    def test_refresh_other_users_item_is_not_found(self):
        other = make_user('other')
        with self.assertRaises(NotFoundError):
            refresh_task_score(other, self.task.pk, NOW)
        with self.assertRaises(NotFoundError):
            refresh_project_score(self.user, 987654, NOW)

    def test_recalculate_all_scores(self):
        Task.objects.create(owner=self.user, title='Loose end')

        result = recalculate_all_scores(self.user, now=NOW)

        self.assertEqual(result, {'tasks_updated': 2, 'projects_updated': 1})
        self.assertFalse(Task.objects.filter(owner=self.user, priority_calculated_at__isnull=True).exists())
        self.assertEqual(Task.objects.get(title='Loose end').priority_score, 5)


class RecalculateCommandTests(TestCase):
    """Tests for the recalculate_priorities command."""

    def test_recalculates_every_user(self):
        for username in ('alice', 'bob'):
            user = make_user(username)
            Task.objects.create(owner=user, title=f'{username} task')
        out = StringIO()

        call_command('recalculate_priorities', '--workers', '1', stdout=out)

        self.assertIn('tasks=2 projects=0 failed_users=0', out.getvalue())
        self.assertFalse(Task.objects.filter(priority_calculated_at__isnull=True).exists())

    def test_single_owner(self):
        alice = make_user('alice')
        Task.objects.create(owner=alice, title='Draft')
        Task.objects.create(owner=make_user('bob'), title='Review')
        out = StringIO()

        call_command('recalculate_priorities', '--owner-id', str(alice.pk), '--workers', '1', stdout=out)

        self.assertIn('tasks=1', out.getvalue())
        self.assertIsNone(Task.objects.get(title='Review').priority_calculated_at)


class PriorityAPITests(APITestCase):
    """Tests for the priority API endpoints."""

    def setUp(self):
        self.user = make_user()
        self.client.force_authenticate(user=self.user)

    def test_requires_authentication(self):
        self.client.force_authenticate(user=None)
        response = self.client.get('/api/priority/top/')
        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))

    def test_top_items(self):
        Task.objects.create(owner=self.user, title='Invoice', priority_score=72)
        Project.objects.create(owner=self.user, name='Site', priority_score=41)

        response = self.client.get('/api/priority/top/', {'limit': 5})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['success'])
        self.assertEqual(response.data['count'], 2)
        self.assertEqual(response.data['items'][0]['type'], 'task')
        self.assertEqual(response.data['items'][0]['urgency_level'], 'critical')
        self.assertEqual(response.data['items'][1]['urgency_level'], 'high')

    def test_top_items_rejects_out_of_range_limit(self):
        for limit in (0, 51, 'many'):
            with self.subTest(limit=limit):
                response = self.client.get('/api/priority/top/', {'limit': limit})
                self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
                self.assertEqual(response.data['error_code'], 'ERR_INVALID_LIMIT')

    def test_recommended_today(self):
        Task.objects.create(owner=self.user, title='Hot', priority_score=65)
        Task.objects.create(owner=self.user, title='Cold', priority_score=12)

        response = self.client.get('/api/priority/today/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([item['title'] for item in response.data['items']], ['Hot'])

    def test_recalculate(self):
        Task.objects.create(owner=self.user, title='One')
        Project.objects.create(owner=self.user, name='Two')

        response = self.client.post('/api/priority/recalculate/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['total_updated'], 2)

    def test_score_task(self):
        task = Task.objects.create(owner=self.user, title='Review', status=TaskStatus.IN_PROGRESS)

        response = self.client.post(f'/api/priority/tasks/{task.pk}/score/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['breakdown']['total_score'], 8)
        self.assertEqual(response.data['breakdown']['reasons'], ['WAITING_ON_APPROVAL'])

    def test_score_unknown_project(self):
        response = self.client.post('/api/priority/projects/424242/score/')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['error_code'], 'ERR_NOT_FOUND')

    def test_preview(self):
        response = self.client.post('/api/priority/preview/', {
            'type': 'project',
            'status': 'DELIVERY',
            'monetary_value': '50000',
            'client_tier': 'VIP'
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['breakdown']['total_score'], 60)
        self.assertEqual(
            response.data['breakdown']['reason'],
            "high budget, VIP client, advanced stage"
        )

    def test_preview_rejects_stage_for_task(self):
        response = self.client.post('/api/priority/preview/', {
            'type': 'task',
            'status': 'DELIVERY'
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error_code'], 'ERR_VALIDATION')
