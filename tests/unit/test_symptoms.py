"""
Unit tests for the symptom classifier.
"""
import pytest

from coffeeleaf.constants import MLP_FALLBACK_VERSION, MLP_VERSION, MODEL_TYPE_SYMPTOM
from coffeeleaf.services.inference import InferenceEngine, ModelCatalog
from coffeeleaf.services.symptoms import (
    SymptomClassifier,
    encode_symptoms,
    known_symptom_ids,
    rule_based_distribution,
)

from conftest import FakeSession, write_model_file

MLP_SCORES = [0.05, 0.05, 0.1, 0.7, 0.1]


@pytest.fixture
def mlp_session():
    return FakeSession(input_shape=(1, 20), scores=MLP_SCORES)


@pytest.fixture
def mlp_engine(model_dir, mlp_session):
    write_model_file(model_dir, 'coffee_mlp_v1.0.onnx')
    engine = InferenceEngine(MODEL_TYPE_SYMPTOM, ModelCatalog([str(model_dir)]),
                             session_loader=lambda path: mlp_session)
    engine.load()
    return engine


class TestEncoding:

    def test_known_ids_are_filtered_and_deduplicated(self):
        assert known_symptom_ids([3, '5', 3, 0, 21, 'x', None, 20]) == [3, 5, 20]
        assert known_symptom_ids(None) == []

    def test_indicator_slots(self):
        vector = encode_symptoms([1, 20, 99])
        assert vector.shape == (1, 20)
        assert vector[0, 0] == 1.0
        assert vector[0, 19] == 1.0
        assert vector.sum() == 2.0


class TestRuleBasedDistribution:
    """Tests for the catalogue-weighted fallback"""

    def test_no_symptoms_is_uniform(self):
        distribution = rule_based_distribution([])
        assert list(distribution.values()) == pytest.approx([0.2] * 5)

    def test_single_rust_symptom(self):
        assert rule_based_distribution([4])['Rust'] == pytest.approx(1.0 / 1.4)

    def test_two_rust_symptoms(self):
        distribution = rule_based_distribution([2, 4])
        assert distribution['Rust'] == pytest.approx(0.8)
        assert sum(distribution.values()) == pytest.approx(1.0)

    def test_uncatalogued_ids_are_ignored(self):
        assert rule_based_distribution([15]) == rule_based_distribution([])


class TestSymptomClassifier:
    """Tests for SymptomClassifier"""

    def test_without_model_uses_rules(self):
        prediction = SymptomClassifier().predict([2, 4])
        assert prediction.disease_name == 'Rust'
        assert prediction.model_version == MLP_FALLBACK_VERSION
        assert prediction.is_reliable is False
        assert prediction.total_symptoms == 2

    def test_model_prediction(self, mlp_engine, mlp_session):
        prediction = SymptomClassifier(mlp_engine).predict([3, 6, 8])
        assert prediction.disease_name == 'Phoma'
        assert prediction.confidence == pytest.approx(0.7)
        assert prediction.model_version == MLP_VERSION
        assert prediction.is_reliable is True
        assert mlp_session.input_shapes == [(1, 20)]

    def test_fewer_than_three_symptoms_is_not_reliable(self, mlp_engine):
        prediction = SymptomClassifier(mlp_engine).predict([3, 6])
        assert prediction.model_version == MLP_VERSION
        assert prediction.is_reliable is False

    def test_model_failure_falls_back_to_rules(self, model_dir):
        write_model_file(model_dir, 'coffee_mlp_v1.0.onnx')
        engine = InferenceEngine(MODEL_TYPE_SYMPTOM, ModelCatalog([str(model_dir)]),
                                 session_loader=lambda path: FakeSession(input_shape=(1, 20),
                                                                         fail_always=True))
        engine.load()

        prediction = SymptomClassifier(engine).predict([4])
        assert prediction.model_version == MLP_FALLBACK_VERSION
        assert prediction.disease_name == 'Rust'

    def test_to_dict_rounds_values(self):
        data = SymptomClassifier().predict([4]).to_dict()
        assert data['confidence'] == round(1.0 / 1.4, 4)
        assert set(data['probabilities']) == {'Cercospora', 'Healthy', 'Miner', 'Phoma', 'Rust'}
