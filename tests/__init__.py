"""
VOICETUTOR Test Suite

Test Organization:
    tests/
    ├── conftest.py          # Orchestrator and collaborator fixtures
    ├── fixtures/            # Mock recognizer, dialogue client, audio devices
    ├── unit/                # One module per component
    └── e2e/                 # Full conversation scenarios (marker: e2e)

Running Tests:
    # Run all tests
    pytest tests/

    # Skip end-to-end scenarios
    pytest tests/ -m "not e2e"

Requirements:
    pip install -e ".[test]"
"""
