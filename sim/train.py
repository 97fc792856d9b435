"""
Main Training Script for Legion AllReduce

Simulates data-parallel training of a small regression model across
several partitions on a single machine. Every step each partition pulls
the latest weights, computes a local gradient on its own data shard, and
the AllReduce parameter manager sums the gradients shard-by-shard and
applies SGD on each shard owner.
"""

import argparse
import time
from typing import List, Tuple

import torch
import torch.nn as nn
from torch.nn.utils import parameters_to_vector, vector_to_parameters

from optim.sgd import SGD
from parameters.allreduce import AllReduceParameterManager
from parameters.config import AllReduceConfig, setup_logging
from sim.cluster import LocalCluster


def create_regression_dataset(
    num_features: int,
    num_batches: int,
    batch_size: int,
    num_partitions: int,
    noise: float = 0.01,
    seed: int = 42
) -> Tuple[torch.Tensor, List[List[Tuple[torch.Tensor, torch.Tensor]]]]:
    """
    Create a linear regression problem split across partitions.

    Returns:
        (true_weights, per-partition lists of (inputs, targets) batches)
    """
    generator = torch.Generator().manual_seed(seed)
    true_weights = torch.randn(num_features, 1, generator=generator)

    shards = []
    for _ in range(num_partitions):
        batches = []
        for _ in range(num_batches):
            inputs = torch.randn(batch_size, num_features, generator=generator)
            targets = inputs @ true_weights + noise * torch.randn(batch_size, 1, generator=generator)
            batches.append((inputs, targets))
        shards.append(batches)

    return true_weights, shards


def local_gradient(model: nn.Module, inputs: torch.Tensor, targets: torch.Tensor) -> Tuple[float, torch.Tensor]:
    """Forward + backward on one partition's batch, returning (loss, flat gradient)"""
    model.zero_grad()
    loss = nn.functional.mse_loss(model(inputs), targets)
    loss.backward()
    gradient = parameters_to_vector([p.grad for p in model.parameters()]).detach()
    return loss.item(), gradient


def train_distributed(
    num_features: int = 64,
    num_partitions: int = 4,
    num_nodes: int = 2,
    num_steps: int = 100,
    batch_size: int = 16,
    learning_rate: float = 0.05,
    momentum: float = 0.0,
    pool_size: int = 2
) -> dict:
    """
    Run distributed training simulation.

    Args:
        num_features: Input dimension of the regression model
        num_partitions: Number of partitions (shard owners)
        num_nodes: Number of simulated block-store nodes
        num_steps: Training steps
        batch_size: Batch size per partition
        learning_rate: Learning rate
        momentum: SGD momentum
        pool_size: Worker pool size for fetches and reductions

    Returns:
        Dictionary of training results
    """
    print(f"\n{'='*60}")
    print(f"Legion AllReduce Training Simulation")
    print(f"{'='*60}")
    print(f"Features: {num_features}")
    print(f"Partitions: {num_partitions}")
    print(f"Nodes: {num_nodes}")
    print(f"Steps: {num_steps}")
    print(f"Batch size per partition: {batch_size}")
    print(f"{'='*60}\n")

    config = AllReduceConfig(pool_size=pool_size)

    # 1. Create one model replica per partition
    torch.manual_seed(0)
    replicas = [nn.Linear(num_features, 1) for _ in range(num_partitions)]
    initial = parameters_to_vector(replicas[0].parameters()).detach().clone()
    print(f"Parameters: {initial.numel():,}")

    # 2. Start the cluster and the parameter manager
    cluster = LocalCluster(num_nodes=num_nodes, config=config)
    manager = AllReduceParameterManager(initial, cluster, num_shards=num_partitions, config=config)
    manager.partitioner.print_partition_info()

    update_fn = SGD(learning_rate=learning_rate, momentum=momentum,
                    gradient_scale=1.0 / num_partitions)

    # 3. Data
    true_weights, shards = create_regression_dataset(
        num_features, num_steps, batch_size, num_partitions
    )

    # 4. Training loop
    print(f"\nStarting training...\n")
    start_time = time.time()

    losses = []
    for step in range(num_steps):
        vectors = manager.sync()

        step_losses = []
        gradients = []
        for pid, model in enumerate(replicas):
            with torch.no_grad():
                vector_to_parameters(vectors[pid], model.parameters())
            inputs, targets = shards[pid][step]
            loss, gradient = local_gradient(model, inputs, targets)
            step_losses.append(loss)
            gradients.append(gradient)

        manager.sum_and_update(gradients, update_fn)

        loss = sum(step_losses) / len(step_losses)
        losses.append(loss)

        if (step + 1) % 10 == 0 or step == 0:
            avg_loss = sum(losses[-10:]) / len(losses[-10:])
            elapsed = time.time() - start_time
            steps_per_sec = (step + 1) / elapsed
            print(f"Step {step+1:3d}/{num_steps} | "
                  f"Loss: {loss:.4f} | "
                  f"Avg Loss: {avg_loss:.4f} | "
                  f"Speed: {steps_per_sec:.2f} steps/s")

    total_time = time.time() - start_time
    final = manager.get_parameter()
    weight_error = (final[:num_features] - true_weights.reshape(-1)).norm().item()

    print(f"\n{'='*60}")
    print("Training Complete!")
    print(f"{'='*60}")
    print(f"Total time: {total_time:.2f}s")
    print(f"Steps/sec: {num_steps / total_time:.2f}")
    print(f"Final loss: {losses[-1]:.4f}")
    print(f"Initial loss: {losses[0]:.4f}")
    print(f"Weight error (L2): {weight_error:.4f}")
    print(f"Optimizer updates per shard: {manager.get_state().get('evalCounter', 0)}")

    print(f"\n{'='*60}")
    print("Stage Timings (ms)")
    print(f"{'='*60}")
    print(manager.metrics.summary())
    print(f"\n{'='*60}\n")

    manager.close()

    return {
        'losses': losses,
        'total_time': total_time,
        'final_loss': losses[-1],
        'initial_loss': losses[0],
        'weight_error': weight_error
    }


def main():
    parser = argparse.ArgumentParser(description="Legion AllReduce Training Simulation")

    parser.add_argument('--features', type=int, default=64, help='Model input dimension')
    parser.add_argument('--partitions', type=int, default=4, help='Number of partitions')
    parser.add_argument('--nodes', type=int, default=2, help='Number of simulated nodes')
    parser.add_argument('--steps', type=int, default=100, help='Number of training steps')
    parser.add_argument('--batch-size', type=int, default=16, help='Batch size per partition')
    parser.add_argument('--lr', type=float, default=0.05, help='Learning rate')
    parser.add_argument('--momentum', type=float, default=0.0, help='SGD momentum')
    parser.add_argument('--pool-size', type=int, default=2, help='Worker pool size')
    parser.add_argument('--log-level', type=str, default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], help='Logging level')

    args = parser.parse_args()

    setup_logging(AllReduceConfig(pool_size=args.pool_size, log_level=args.log_level))

    train_distributed(
        num_features=args.features,
        num_partitions=args.partitions,
        num_nodes=args.nodes,
        num_steps=args.steps,
        batch_size=args.batch_size,
        learning_rate=args.lr,
        momentum=args.momentum,
        pool_size=args.pool_size
    )


if __name__ == "__main__":
    main()
