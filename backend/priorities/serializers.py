"""
Serializers for the prioritization API.

These validate query parameters and unsaved item snapshots; stored records
are read straight from the ORM by the selection module.
"""

from rest_framework import serializers

from crm.models import ClientTier, ProjectStage, TaskStatus

from .scoring import ItemKind, ItemSnapshot
from .selection import DEFAULT_LIMIT, MAX_LIMIT


class TopItemsQuerySerializer(serializers.Serializer):
    """Query string for the top-items endpoint."""

    limit = serializers.IntegerField(
        min_value=1,
        max_value=MAX_LIMIT,
        default=DEFAULT_LIMIT,
        required=False,
        error_messages={
            'min_value': f'Limit must be between 1 and {MAX_LIMIT}',
            'max_value': f'Limit must be between 1 and {MAX_LIMIT}'
        }
    )


class ScorePreviewSerializer(serializers.Serializer):
    """
    An item that may not be persisted yet, submitted for a score preview.

    ``status`` is a task status for tasks and a stage for projects.
    """

    type = serializers.ChoiceField(choices=[kind.value for kind in ItemKind])
    status = serializers.CharField()
    deadline = serializers.DateTimeField(required=False, allow_null=True)
    monetary_value = serializers.DecimalField(
        max_digits=12,
        decimal_places=2,
        min_value=0,
        required=False,
        allow_null=True
    )
    client_tier = serializers.ChoiceField(
        choices=ClientTier.choices,
        required=False,
        allow_null=True
    )

    def validate(self, attrs):
        kind = ItemKind(attrs['type'])
        allowed = TaskStatus.values if kind is ItemKind.TASK else ProjectStage.values
        if attrs['status'] not in allowed:
            raise serializers.ValidationError({
                'status': f"Invalid {kind.value} status. Valid options: {allowed}"
            })
        return attrs

    def to_snapshot(self) -> ItemSnapshot:
        data = self.validated_data
        return ItemSnapshot(
            kind=ItemKind(data['type']),
            status=data['status'],
            deadline=data.get('deadline'),
            monetary_value=data.get('monetary_value'),
            client_tier=data.get('client_tier')
        )

