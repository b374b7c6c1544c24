#!/usr/bin/env python3
"""
Minimal training demo for wgpu_fnn.

Trains a small classifier on synthetic 8x8 images: a Conv2D feature map
followed by a two-layer MLP with a SoftMax head, optimized with Nesterov
momentum on categorical cross entropy.

Usage:
    python -m wgpu_fnn.examples.train_demo
"""

import logging

import numpy as np

from wgpu_fnn import (
    CategoricalCrossEntropy,
    Conv2D,
    Dense,
    MinAccuracyReached,
    Model,
    NesterovMomentumOptimizer,
    ReLU,
    SoftMax,
    TrainingOptions,
    TrainingVerbosity,
    setup_context,
)


def generate_data(n_samples: int, n_classes: int, seed: int = 42):
    """Noisy 8x8 images with one bright row per class."""
    rng = np.random.RandomState(seed)
    y = rng.randint(0, n_classes, size=n_samples)
    X = rng.rand(n_samples, 8, 8).astype(np.float32) * 0.3
    for i, label in enumerate(y):
        X[i, 2 * label + 1, :] += 1.0
    one_hot = np.eye(n_classes, dtype=np.float32)[y]
    return X, one_hot


def main():
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    np.random.seed(0)

    n_classes = 4
    X, y = generate_data(512, n_classes)

    model = Model([
        Conv2D((8, 8), (3, 3)),
        ReLU(36),
        Dense(36, 16),
        ReLU(16),
        Dense(16, n_classes),
        SoftMax(n_classes),
    ])
    assert model.layer_widths_match()

    context = setup_context()
    model.init(context)
    try:
        loss = model.fit(X, y, TrainingOptions(
            loss_fn=CategoricalCrossEntropy(),
            optimizer=NesterovMomentumOptimizer(momentum=0.9),
            learning_rate=0.01,
            epochs=40,
            batch_size=64,
            compute_accuracy=True,
            halting_condition=MinAccuracyReached(0.98),
            verbosity=TrainingVerbosity(
                show_epoch_progress=True,
                print_loss=True,
                print_accuracy=True,
                halting_condition_warning=True,
            ),
        ))
        predictions = model.predict(X[:8])
    finally:
        model.release_device_state()
        context.release()

    print()
    print(f"Final loss: {loss:.4f}")
    print(f"Predicted: {predictions.argmax(axis=1)}")
    print(f"Expected:  {y[:8].argmax(axis=1)}")


if __name__ == "__main__":
    main()
