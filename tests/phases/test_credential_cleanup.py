import pytest

from infraboot import credentials as cred
from infraboot.config.models import BootstrapConfig
from infraboot.errors import PhaseError
from infraboot.observers.events import CredentialsCleared
from infraboot.phases import phase1
from infraboot.phases.context import BootstrapContext
from infraboot.phases.runner import OK, Phase, PhaseRunner
from infraboot.utils.execution import ExecutionContext

SENSITIVE_PREFIXES = ("TF_VAR_", "MINIO_ROOT_", "AWS_")


def _sensitive(environ):
    return sorted(n for n in environ if n.startswith(SENSITIVE_PREFIXES) or n == "GITHUB_TOKEN")


def _environ():
    return {
        "GITHUB_TOKEN": "ghp_bootstrap",
        "AWS_ACCESS_KEY_ID": "admin-1234abcd",
        "AWS_SECRET_ACCESS_KEY": "awssecret1234567890",
        "HOME": "/root",
    }


def _ctx(environ, bus, run_ctx, *, preserve=False, **config):
    return BootstrapContext.create(
        BootstrapConfig(**config),
        execution=ExecutionContext(skip_validation=True),
        bus=bus,
        run_ctx=run_ctx,
        environ=environ,
        preserve_credentials=preserve,
    )


def _generate(ctx):
    ctx.credentials.generate_bootstrap_credentials()
    ctx.credentials.put(cred.TF_MINIO_ACCESS_KEY, "tf-user")
    return "generated"


def test_credentials_scrubbed_after_success(bus, capture, run_ctx):
    environ = _environ()
    ctx = _ctx(environ, bus, run_ctx)
    seen = []

    report = PhaseRunner(bus, run_ctx).run(
        [Phase("generate", _generate), Phase("inspect", lambda c: seen.extend(_sensitive(environ)))], ctx,
    )

    assert report.ok
    assert "MINIO_ROOT_PASSWORD" in seen
    assert cred.MINIO_ROOT_USER in seen
    assert _sensitive(environ) == []
    assert environ == {"HOME": "/root"}
    assert capture.of(CredentialsCleared)[-1].count == len(seen) + 1   # + TF_MINIO_ACCESS_KEY


def test_credentials_scrubbed_after_critical_failure(bus, run_ctx):
    environ = _environ()
    ctx = _ctx(environ, bus, run_ctx)

    def explode(c):
        raise RuntimeError("terraform apply failed")

    with pytest.raises(PhaseError) as err:
        PhaseRunner(bus, run_ctx).run([Phase("generate", _generate), Phase("apply", explode)], ctx)

    assert err.value.phase == "apply"
    assert _sensitive(environ) == []
    assert ctx.credentials.names() == []


def test_credentials_scrubbed_after_interrupt(bus, run_ctx):
    environ = _environ()
    ctx = _ctx(environ, bus, run_ctx)

    def interrupt(c):
        raise KeyboardInterrupt

    with pytest.raises(KeyboardInterrupt):
        PhaseRunner(bus, run_ctx).run([Phase("generate", _generate), Phase("wait", interrupt)], ctx)

    assert _sensitive(environ) == []


def test_preserved_credentials_survive_storage_phase_until_cleanup(spy, bus, run_ctx, tmp_path, fake_time):
    environ = _environ()
    ctx = _ctx(environ, bus, run_ctx, preserve=True, work_dir=tmp_path)
    ctx.terraform_dir.mkdir()
    (ctx.terraform_dir / "main.tf").write_text("")
    kept = {}

    def hand_over(c):
        kept.update({n: environ[n] for n in _sensitive(environ)})
        return "phase 2 reads the credentials"

    report = PhaseRunner(bus, run_ctx).run(
        [Phase("1c", phase1.deploy_storage), Phase("2a", hand_over)], ctx,
    )

    assert [r.status for r in report.results] == [OK, OK]
    assert spy.called("terraform", "apply")
    for name in cred.BOOTSTRAP_REQUIRED + ("MINIO_ROOT_USER", "GITHUB_TOKEN", "TF_VAR_resource_tier"):
        assert name in kept
    assert _sensitive(environ) == []


def test_standalone_storage_phase_clears_credentials_itself(spy, bus, run_ctx, tmp_path, fake_time):
    environ = _environ()
    ctx = _ctx(environ, bus, run_ctx, work_dir=tmp_path)
    ctx.terraform_dir.mkdir()
    (ctx.terraform_dir / "main.tf").write_text("")

    phase1.deploy_storage(ctx)

    assert _sensitive(environ) == []
    # terraform still saw the generated credentials
    init = spy.calls.index(["terraform", "init"])
    assert cred.MINIO_ROOT_PASSWORD in spy.kwargs[init]["env"]
