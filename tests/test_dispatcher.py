from unittest.mock import MagicMock

import pytest

from forgeworks_common.errors import AlreadyExists, InvalidRequest, ObjectStoreError, UnknownBlueprintType
from forgeworks_common.schemas import Action, ArtifactKind, BlueprintType
from forgeworks_worker.dispatcher import Dispatcher, resolve_type


@pytest.fixture
def mocked(store):
    scaffold = MagicMock(return_value={"success": True})
    deploy = MagicMock(return_value={"success": True, "status": "build_started"})
    store.create_job("job-1", {})
    return Dispatcher(store, scaffold, deploy), scaffold, deploy


class TestRouting:

    def test_every_type_has_a_route(self):
        for btype in BlueprintType:
            assert isinstance(btype.action, Action)
            assert isinstance(btype.kind, ArtifactKind)

    @pytest.mark.parametrize("btype,handler,kind", [
        ("scaffold-function", "scaffold", ArtifactKind.FUNCTION),
        ("scaffold-run-service", "scaffold", ArtifactKind.RUN_SERVICE),
        ("deploy-function", "deploy", ArtifactKind.FUNCTION),
        ("deploy-run-service", "deploy", ArtifactKind.RUN_SERVICE),
    ])
    def test_single_step_types(self, mocked, btype, handler, kind):
        dispatcher, scaffold, deploy = mocked
        dispatcher.dispatch("job-1", {"type": btype, "name": "alpha"})

        called = scaffold if handler == "scaffold" else deploy
        other = deploy if handler == "scaffold" else scaffold
        assert called.call_count == 1
        assert called.call_args.args[1] is kind
        assert called.call_args.args[2] == "alpha"
        other.assert_not_called()

    def test_unknown_type_invokes_nothing(self, mocked, store):
        dispatcher, scaffold, deploy = mocked

        with pytest.raises(UnknownBlueprintType, match="nonexistent-type"):
            dispatcher.dispatch("job-1", {"type": "nonexistent-type", "name": "alpha"})

        scaffold.assert_not_called()
        deploy.assert_not_called()
        assert "Type: nonexistent-type" in store.get_job("job-1").logs[-1]

    def test_resolve_type(self):
        assert resolve_type({"type": "deploy-run-service"}) is BlueprintType.DEPLOY_RUN_SERVICE
        with pytest.raises(UnknownBlueprintType):
            resolve_type({})

    def test_missing_name(self, mocked):
        dispatcher, scaffold, _ = mocked
        with pytest.raises(InvalidRequest, match="missing 'name' for scaffold-function"):
            dispatcher.dispatch("job-1", {"type": "scaffold-function"})
        scaffold.assert_not_called()

    def test_deploy_gets_version(self, mocked):
        dispatcher, _, deploy = mocked
        dispatcher.dispatch("job-1", {"type": "deploy-function", "name": "alpha", "version": "v3"})
        assert deploy.call_args.args[3] == "v3"


class TestCreateAndDeploy:

    def test_fresh_artifact(self, mocked, store):
        dispatcher, scaffold, deploy = mocked

        out = dispatcher.dispatch("job-1", {"type": "create-and-deploy-function", "name": "alpha"})

        assert out["success"] is True
        assert out["scaffoldStatus"] == "created"
        assert out["deployResult"]["status"] == "build_started"
        scaffold.assert_called_once()
        deploy.assert_called_once()
        logs = store.get_job("job-1").logs
        step1 = next(i for i, line in enumerate(logs) if "Step 1/2" in line)
        step2 = next(i for i, line in enumerate(logs) if "Step 2/2" in line)
        assert step1 < step2

    def test_existing_artifact_still_deploys(self, mocked):
        dispatcher, scaffold, deploy = mocked
        scaffold.side_effect = AlreadyExists("Run service 'svc' already exists.")

        out = dispatcher.dispatch("job-1", {"type": "create-and-deploy-run-service", "name": "svc"})

        assert out["success"] is True
        assert out["scaffoldStatus"] == "already_exists"
        assert out["scaffoldResult"]["alreadyExists"] is True
        deploy.assert_called_once()

    def test_other_scaffold_errors_abort(self, mocked):
        dispatcher, scaffold, deploy = mocked
        scaffold.side_effect = ObjectStoreError("disk full")

        with pytest.raises(ObjectStoreError):
            dispatcher.dispatch("job-1", {"type": "create-and-deploy-function", "name": "alpha"})
        deploy.assert_not_called()

    def test_real_handlers_with_existing_function(self, dispatcher, store, scaffold, storage):
        store.create_job("job-2", {})
        dispatcher.dispatch("job-2", {"type": "scaffold-function", "name": "alpha"})

        store.create_job("job-3", {})
        out = dispatcher.dispatch("job-3", {"type": "create-and-deploy-function", "name": "alpha"})

        assert out["scaffoldStatus"] == "already_exists"
        assert out["deployResult"]["cached"] is False
        assert storage.exists("functions/alpha/source-vlatest.zip")
