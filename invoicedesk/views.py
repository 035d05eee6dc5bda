from django.http import JsonResponse


def error_404_view(request, exception):
    # same {"error": ...} shape as the payment views
    return JsonResponse({"error": "not_found"}, status=404)


def error_500_view(request):
    return JsonResponse({"error": "server_error"}, status=500)
