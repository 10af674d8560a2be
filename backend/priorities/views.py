"""
API Views for work prioritization.

Read endpoints rank already-stored scores; write endpoints recalculate and
store them. All results are scoped to the authenticated user.
"""

from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import status
from rest_framework.decorators import api_view, throttle_classes
from rest_framework.request import Request
from rest_framework.response import Response
from rest_framework.throttling import UserRateThrottle

from common.api import error_response, invalid_input_response
from common.errors import ErrorCode, OpsError

from .scoring import compute_breakdown
from .selection import (
    MAX_LIMIT,
    get_recommended_for_today,
    get_top_priority_items,
    priority_item_to_dict,
)
from .serializers import ScorePreviewSerializer, TopItemsQuerySerializer
from .services import recalculate_all_scores, refresh_project_score, refresh_task_score


class RecalculateRateThrottle(UserRateThrottle):
    """Rate limit for bulk recalculation - 6 requests per minute."""
    rate = '6/min'


@extend_schema(
    summary="Top priority items",
    description="Open tasks and projects ranked by stored priority score.",
    parameters=[
        OpenApiParameter('limit', OpenApiTypes.INT, description=f'1-{MAX_LIMIT}, default 10'),
    ],
    responses={200: OpenApiTypes.OBJECT},
    tags=['Priority']
)
@api_view(['GET'])
def top_items(request: Request) -> Response:
    """
    GET /api/priority/top/?limit=10
    """
    query = TopItemsQuerySerializer(data=request.query_params)
    if not query.is_valid():
        return Response(
            {
                'success': False,
                'error_code': ErrorCode.ERR_INVALID_LIMIT.value,
                'errors': query.errors,
                'message': f'Limit must be between 1 and {MAX_LIMIT}'
            },
            status=status.HTTP_400_BAD_REQUEST
        )

    limit = query.validated_data['limit']
    items = get_top_priority_items(request.user, limit)
    return Response({
        'success': True,
        'count': len(items),
        'limit': limit,
        'items': [priority_item_to_dict(item) for item in items]
    })


@extend_schema(
    summary="Recommended for today",
    description="""
    The top five ranked items, keeping only those with a score of 50 or more
    or a deadline that is today or already past.
    """,
    responses={200: OpenApiTypes.OBJECT},
    tags=['Priority']
)
@api_view(['GET'])
def recommended_today(request: Request) -> Response:
    """
    GET /api/priority/today/
    """
    items = get_recommended_for_today(request.user)
    return Response({
        'success': True,
        'count': len(items),
        'items': [priority_item_to_dict(item) for item in items]
    })


@extend_schema(
    summary="Recalculate all priority scores",
    responses={200: OpenApiTypes.OBJECT},
    tags=['Priority']
)
@api_view(['POST'])
@throttle_classes([RecalculateRateThrottle])
def recalculate(request: Request) -> Response:
    """
    POST /api/priority/recalculate/
    """
    result = recalculate_all_scores(request.user)
    return Response({
        'success': True,
        'message': 'Priority scores recalculated',
        'tasks_updated': result['tasks_updated'],
        'projects_updated': result['projects_updated'],
        'total_updated': result['tasks_updated'] + result['projects_updated']
    })


@extend_schema(
    summary="Recalculate one task's score",
    request=None,
    responses={200: OpenApiTypes.OBJECT, 404: OpenApiTypes.OBJECT},
    tags=['Priority']
)
@api_view(['POST'])
def score_task(request: Request, pk: int) -> Response:
    """
    POST /api/priority/tasks/<id>/score/
    """
    try:
        breakdown = refresh_task_score(request.user, pk)
    except OpsError as exc:
        return error_response(exc)
    return Response({'success': True, 'id': pk, 'type': 'task', 'breakdown': breakdown.to_dict()})


@extend_schema(
    summary="Recalculate one project's score",
    request=None,
    responses={200: OpenApiTypes.OBJECT, 404: OpenApiTypes.OBJECT},
    tags=['Priority']
)
@api_view(['POST'])
def score_project(request: Request, pk: int) -> Response:
    """
    POST /api/priority/projects/<id>/score/
    """
    try:
        breakdown = refresh_project_score(request.user, pk)
    except OpsError as exc:
        return error_response(exc)
    return Response({'success': True, 'id': pk, 'type': 'project', 'breakdown': breakdown.to_dict()})


@extend_schema(
    summary="Preview a score",
    description="Score an unsaved task or project without storing anything.",
    request=ScorePreviewSerializer,
    responses={200: OpenApiTypes.OBJECT},
    tags=['Priority']
)
@api_view(['POST'])
def preview(request: Request) -> Response:
    """
    POST /api/priority/preview/

    Request Body:
    {
        "type": "task",                    // or "project"
        "status": "WAITING_APPROVAL",      // task status or project stage
        "deadline": "2025-01-31T17:00:00Z", // optional
        "monetary_value": 25000,           // optional
        "client_tier": "VIP"               // optional
    }
    """
    serializer = ScorePreviewSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_input_response(serializer.errors)

    breakdown = compute_breakdown(serializer.to_snapshot())
    return Response({'success': True, 'breakdown': breakdown.to_dict()})


@extend_schema(
    summary="API information",
    responses={200: OpenApiTypes.OBJECT},
    tags=['Info']
)
@api_view(['GET'])
def api_info(request: Request) -> Response:
    """
    GET /api/
    """
    return Response({
        'name': 'Operations Backend API',
        'version': '1.0.0',
        'documentation': '/api/docs/',
        'endpoints': {
            'GET /api/priority/top/': 'Top priority tasks and projects',
            'GET /api/priority/today/': 'Recommended for today',
            'POST /api/priority/recalculate/': 'Recalculate all scores',
            'POST /api/priority/tasks/<id>/score/': 'Recalculate one task',
            'POST /api/priority/projects/<id>/score/': 'Recalculate one project',
            'POST /api/priority/preview/': 'Score an unsaved item',
            'GET|POST /api/billing/recurring/': 'List or create recurring payments',
            'PATCH|DELETE /api/billing/recurring/<id>/': 'Update or delete a recurring payment',
            'POST /api/billing/recurring/<id>/advance/': 'Advance one billing cycle',
            'POST /api/billing/recurring/<id>/pause|resume|cancel/': 'Lifecycle transitions',
            'GET /api/billing/recurring/<id>/documents/': 'Documents issued by the provider',
            'POST /api/billing/payments/<id>/pay|cancel/': 'Payment transitions',
            'GET /api/billing/payments/overdue/': 'Overdue payments',
            'GET /api/billing/payments/stats/': 'Payment statistics'
        },
        'error_codes': {
            code.value: code.name for code in ErrorCode
        }
    })
