"""
Pytest configuration and fixtures
"""
import pytest
import os
from datetime import date, datetime, timedelta, timezone
from typing import AsyncGenerator, Dict, List, Optional

import httpx
from botocore.exceptions import ClientError
from botocore.response import StreamingBody
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from io import BytesIO
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from app.core.field_crypto import FieldCodec
from app.core.security import create_access_token
from app.models import Exam, ExamType, Patient, User, UserRole
from app.services.audit_service import AuditService
from app.services.certificate_store import CertificateStore
from app.services.legacy_storage import UploadcareStore
from app.services.report_lifecycle import ReportLifecycleService
from app.services.report_renderer import RenderAssets, ReportRenderer
from app.services.s3_service import S3ReportStore
from app.services.signing_engine import SigningEngine
from app.services.storage_reconciler import StorageReconciler


# Test database URL (use in-memory SQLite for testing)
TEST_DATABASE_URL = os.getenv(
    "TEST_DATABASE_URL",
    "sqlite+aiosqlite:///:memory:"
)

CERT_PASSWORD = "senha123"
TEST_BUCKET = "laudos-test"
UPLOADCARE_UUID = "3c269810-c17b-4e2c-92b6-25622464d866"


# ==================== PKCS#12 material ====================

def make_pkcs12(
    common_name: str = "DR JOAO DA SILVA:12345678900",
    password: str = CERT_PASSWORD,
    expired: bool = False,
) -> bytes:
    """Self-signed A1-like certificate with its private key"""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, "BR"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "ICP-Brasil"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])
    now = datetime.now(timezone.utc)
    if expired:
        not_before, not_after = now - timedelta(days=400), now - timedelta(days=1)
    else:
        not_before, not_after = now - timedelta(days=1), now + timedelta(days=365)

    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )
    return pkcs12.serialize_key_and_certificates(
        b"laudos",
        key,
        cert,
        None,
        serialization.BestAvailableEncryption(password.encode("utf-8")),
    )


@pytest.fixture(scope="session")
def pkcs12_bytes() -> bytes:
    return make_pkcs12()


@pytest.fixture(scope="session")
def expired_pkcs12_bytes() -> bytes:
    return make_pkcs12(common_name="DR EXPIRADO", expired=True)


# ==================== Storage fakes ====================

class FakeS3Client:
    """In-memory stand-in for the boto3 S3 client"""

    def __init__(self, fail_puts: bool = False):
        self.objects: Dict[str, bytes] = {}
        self.fail_puts = fail_puts
        self.put_calls = 0

    @staticmethod
    def _error(code: str, operation: str) -> ClientError:
        return ClientError({"Error": {"Code": code, "Message": code}}, operation)

    def put_object(self, Bucket, Key, Body, **kwargs):
        self.put_calls += 1
        if self.fail_puts:
            raise self._error("InternalError", "PutObject")
        self.objects[Key] = Body
        return {"ETag": '"etag"'}

    def head_object(self, Bucket, Key):
        if Key not in self.objects:
            raise self._error("404", "HeadObject")
        return {"ContentLength": len(self.objects[Key])}

    def delete_object(self, Bucket, Key):
        self.objects.pop(Key, None)
        return {}

    def get_object(self, Bucket, Key):
        if Key not in self.objects:
            raise self._error("NoSuchKey", "GetObject")
        data = self.objects[Key]
        return {"Body": StreamingBody(BytesIO(data), len(data))}

    def generate_presigned_url(self, operation, Params, ExpiresIn):
        return f"https://{Params['Bucket']}.s3.amazonaws.com/{Params['Key']}?X-Amz-Expires={ExpiresIn}"


class FakeUploadcare:
    """httpx transport handler emulating the Uploadcare upload, REST and CDN endpoints"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.files: Dict[str, bytes] = {}
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail:
            return httpx.Response(500, json={"detail": "unavailable"})

        if request.url.host == "upload.uploadcare.com":
            self.files[UPLOADCARE_UUID] = request.content
            return httpx.Response(200, json={"file": UPLOADCARE_UUID})
        if request.url.host == "api.uploadcare.com" and request.method == "DELETE":
            removed = self.files.pop(UPLOADCARE_UUID, None)
            return httpx.Response(200 if removed is not None else 404, json={})
        if request.method == "GET":
            if UPLOADCARE_UUID not in self.files:
                return httpx.Response(404)
            return httpx.Response(200, content=b"%PDF-1.4 legacy document")
        return httpx.Response(400)


def build_storage(s3_client: Optional[FakeS3Client], uploadcare: FakeUploadcare) -> StorageReconciler:
    primary = S3ReportStore(bucket_name=TEST_BUCKET, client=s3_client) if s3_client else S3ReportStore(None)
    legacy = UploadcareStore(
        public_key="pub-key",
        secret_key="secret-key",
        client=httpx.AsyncClient(transport=httpx.MockTransport(uploadcare)),
    )
    return StorageReconciler(primary, legacy, presigned_ttl=900)


@pytest.fixture
def s3_client() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def uploadcare() -> FakeUploadcare:
    return FakeUploadcare()


@pytest.fixture
async def storage(s3_client: FakeS3Client, uploadcare: FakeUploadcare) -> AsyncGenerator[StorageReconciler, None]:
    reconciler = build_storage(s3_client, uploadcare)
    yield reconciler
    await reconciler.legacy.aclose()


# ==================== Database ====================

@pytest.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Create a test database session
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False} if "sqlite" in TEST_DATABASE_URL else {},
        poolclass=StaticPool if "sqlite" in TEST_DATABASE_URL else None,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session_maker = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="session")
def codec() -> FieldCodec:
    return FieldCodec(FieldCodec.generate_key())


async def create_user(
    db: AsyncSession,
    codec: FieldCodec,
    name: str,
    email: str,
    role: UserRole = UserRole.MEDICO,
    tenant_id: int = 1,
    crm: Optional[str] = "CRM/SP 123456",
    specialty_id: Optional[int] = 1,
) -> User:
    user = User(
        tenant_id=tenant_id,
        name=codec.encrypt(name),
        email=email,
        crm=crm,
        role=role,
        specialty_id=specialty_id,
        is_active=True,
    )
    db.add(user)
    await db.flush()
    return user


@pytest.fixture
async def physician(db_session: AsyncSession, codec: FieldCodec) -> User:
    return await create_user(db_session, codec, "Dr. João da Silva", "joao@clinica.com")


@pytest.fixture
async def other_physician(db_session: AsyncSession, codec: FieldCodec) -> User:
    return await create_user(db_session, codec, "Dra. Ana Souza", "ana@clinica.com", crm="CRM/SP 654321")


@pytest.fixture
async def technician(db_session: AsyncSession, codec: FieldCodec) -> User:
    return await create_user(
        db_session, codec, "Carlos Técnico", "carlos@clinica.com", role=UserRole.TECNICO, crm=None, specialty_id=None
    )


@pytest.fixture
async def exam(db_session: AsyncSession, codec: FieldCodec, technician: User) -> Exam:
    patient = Patient(
        tenant_id=1,
        name=codec.encrypt("Maria Oliveira"),
        cpf=codec.encrypt("123.456.789-00"),
        birth_date=date(1980, 5, 17),
    )
    exam_type = ExamType(name="Eletrocardiograma")
    db_session.add_all([patient, exam_type])
    await db_session.flush()

    exam = Exam(
        tenant_id=1,
        patient=patient,
        exam_type=exam_type,
        technician_id=technician.id,
        exam_date=datetime(2025, 3, 10, 9, 30, tzinfo=timezone.utc),
        height="1,68",
        weight="70",
        heart_rate="72",
        pr_interval="160",
        qrs_duration="90",
    )
    db_session.add(exam)
    await db_session.flush()
    return exam


@pytest.fixture
def certificates(db_session: AsyncSession, codec: FieldCodec, tmp_path) -> CertificateStore:
    return CertificateStore(db_session, codec, str(tmp_path / "certificados"))


@pytest.fixture
def service(
    db_session: AsyncSession,
    codec: FieldCodec,
    storage: StorageReconciler,
    certificates: CertificateStore,
) -> ReportLifecycleService:
    return ReportLifecycleService(
        db=db_session,
        codec=codec,
        storage=storage,
        certificates=certificates,
        signer=SigningEngine(certificates, timeout_seconds=60),
        audit=AuditService(db_session),
        renderer=ReportRenderer(RenderAssets()),
        public_base_url="https://laudos.example.com/publico",
        signature_reason="Assinatura Digital Laudo Médico",
        signature_location="Sistema LaudoFy",
    )


def auth_headers_for(user: User) -> dict:
    token = create_access_token(data={"sub": str(user.id), "role": user.role.value})
    return {"Authorization": f"Bearer {token}"}
