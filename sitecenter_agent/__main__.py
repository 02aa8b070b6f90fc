"""
Entry point for running the agent as a module
"""
from sitecenter_agent.agent import main

if __name__ == '__main__':
    main()
