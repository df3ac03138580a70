from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework_simplejwt.exceptions import TokenError
from rest_framework_simplejwt.tokens import RefreshToken

from .serializers import DeviceSerializer, LoginSerializer, UserSerializer


def token_pair(user):
    refresh = RefreshToken.for_user(user)
    return {"refresh": str(refresh), "access": str(refresh.access_token)}


class LoginView(APIView):
    """
    POST {"username", "password"} -> the account plus a JWT pair.

    The access token also authenticates the websocket endpoints
    (ws/driver/?token=..., ws/client/?token=...).
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request):
        serializer = LoginSerializer(data=request.data, context={"request": request})
        serializer.is_valid(raise_exception=True)
        user = serializer.validated_data["user"]

        return Response({"user": UserSerializer(user).data, "tokens": token_pair(user)})


class RefreshTokenView(APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request):
        raw = request.data.get("refresh")
        if not raw:
            return Response({"error": "Refresh token is required"}, status=400)

        try:
            access = RefreshToken(raw).access_token
        except TokenError as e:
            return Response({"error": str(e)}, status=401)
        return Response({"access": str(access)})


class MeView(APIView):
    """
    GET: the signed-in account.
    PATCH: update phone number and/or device push token.
    """
    permission_classes = [IsAuthenticated]

    def get(self, request):
        return Response(UserSerializer(request.user).data)

    def patch(self, request):
        serializer = DeviceSerializer(request.user, data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        serializer.save()
        return Response(UserSerializer(request.user).data)
